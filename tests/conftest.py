import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-chathub-tests-0123456789")

from unittest.mock import AsyncMock, Mock  # noqa: E402

import jwt  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import chathub.models  # noqa: E402,F401
from chathub.config import Settings, settings  # noqa: E402
from chathub.database import Base  # noqa: E402
from chathub.models import PlatformAccount  # noqa: E402
from chathub.services.llm import LLMResponse  # noqa: E402


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite://",
        jwt_secret=settings.jwt_secret,
        app_url="https://hub.example.com",
        skip_webhook_registration=True,
        whatsapp_verify_token="verify-me",
        whatsapp_app_secret=None,
        openai_api_key="test-key",
    )


@pytest.fixture
def mock_llm():
    llm = Mock()
    llm.generate = AsyncMock(return_value=LLMResponse(content="Hi! How can I help?", model="test-model"))
    return llm


@pytest.fixture
def mock_broadcaster():
    broadcaster = Mock()
    broadcaster.emit_new_message = AsyncMock(return_value=1)
    broadcaster.emit_new_conversation = AsyncMock(return_value=1)
    return broadcaster


def make_account(db, user_id=1, platform="telegram", external_app_id="99", token="99:AAA", secret="s3cret"):
    account_settings = {"username": "hub_bot", "first_name": "Hub"}
    if secret:
        account_settings["webhookSecret"] = secret
    account = PlatformAccount(
        user_id=user_id,
        platform=platform,
        external_app_id=external_app_id,
        access_token=token,
        settings=account_settings,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


def make_token(user_id, secret=None):
    return jwt.encode({"sub": user_id}, secret or settings.jwt_secret, algorithm="HS256")


def telegram_update(update_id=1, chat_id=42, text="Hello", message_id=10, date=1700000000):
    return {
        "update_id": update_id,
        "message": {
            "message_id": message_id,
            "date": date,
            "chat": {"id": chat_id, "type": "private", "first_name": "Ann"},
            "from": {"id": chat_id, "is_bot": False, "first_name": "Ann", "last_name": "Lee", "username": "ann"},
            "text": text,
        },
    }
