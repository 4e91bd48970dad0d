import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from chathub.config import settings
from chathub.container import build_container
from chathub.database import SessionLocal, create_tables, get_db
from chathub.logging_config import get_logger, setup_logging
from chathub.models import Conversation, Message, PlatformAccount
from chathub.routers import ai_assistant, conversations, knowledge, platform_accounts, telegram, websocket, whatsapp

setup_logging(settings.log_level)
logger = get_logger("main")

app = FastAPI(
    title="ChatHub API",
    description="Telegram and WhatsApp message hub with realtime updates and AI replies",
    version="0.1.0",
    debug=settings.debug,
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.container = build_container(settings, SessionLocal)

app.include_router(telegram.router)
app.include_router(whatsapp.router)
app.include_router(platform_accounts.router)
app.include_router(conversations.router)
app.include_router(ai_assistant.router)
app.include_router(knowledge.router)
app.include_router(websocket.router)


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _under_pytest() -> bool:
    return bool(os.environ.get("PYTEST_CURRENT_TEST"))


def _is_poller_enabled() -> bool:
    if _under_pytest():
        return False
    return _is_env_enabled(os.environ.get("POLLING_ENABLED"), default=settings.is_polling_enabled)


@app.on_event("startup")
async def startup() -> None:
    if not _under_pytest():
        create_tables()
    if _is_poller_enabled():
        app.state.container.poller.start()


@app.on_event("shutdown")
async def shutdown() -> None:
    container = app.state.container
    await container.poller.stop()
    await container.task_runner.shutdown()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "platform_accounts": db.query(PlatformAccount).count(),
        "conversations": db.query(Conversation).count(),
        "messages": db.query(Message).count(),
    }
