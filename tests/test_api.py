import hashlib
import hmac
import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from conftest import make_account, make_token, telegram_update
from fastapi.testclient import TestClient

from chathub.container import build_container
from chathub.database import get_db
from chathub.errors import KnowledgeBaseError, NoKnowledgeBase, PlatformError, PlatformSendError
from chathub.gateways import CredentialInfo
from chathub.gateways.base import Contact
from chathub.main import app
from chathub.models import Conversation, Message, PlatformAccount
from chathub.services.conversation_service import find_or_create_conversation
from chathub.services.knowledge_service import KnowledgeAnswer
from chathub.services.message_service import append_message

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def api(db, session_factory, test_settings, mock_llm):
    previous_container = app.state.container
    container = build_container(test_settings, session_factory, llm=mock_llm)
    app.state.container = container

    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    try:
        yield SimpleNamespace(client=TestClient(app), container=container, db=db)
    finally:
        app.dependency_overrides.clear()
        app.state.container = previous_container


def auth(user_id=1):
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def seed_conversation(db, user_id=1, platform="telegram", external_app_id="99", chat_id="42"):
    account = make_account(db, user_id=user_id, platform=platform, external_app_id=external_app_id)
    conversation, _ = find_or_create_conversation(db, account, Contact(chat_id, "Ann Lee", "ann"))
    append_message(db, conversation.id, "client", "Hello", platform, T0, external_message_id="10")
    db.commit()
    return account, conversation


class TestHealth:
    def test_health(self, api):
        response = api.client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_db_check(self, api):
        seed_conversation(api.db)

        response = api.client.get("/db-check")

        assert response.json() == {"status": "ok", "platform_accounts": 1, "conversations": 1, "messages": 1}


class TestTelegramWebhookEndpoint:
    def test_valid_update_is_stored(self, api):
        make_account(api.db, external_app_id="99", secret="s3cret")

        response = api.client.post(
            "/telegram/webhook/99",
            json=telegram_update(text="Hello"),
            headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"},
        )

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        assert api.db.query(Message).one().text == "Hello"

    def test_platform_secret_header_is_accepted(self, api):
        make_account(api.db, external_app_id="99", secret="s3cret")

        api.client.post(
            "/telegram/webhook/99", json=telegram_update(), headers={"X-Platform-Secret-Token": "s3cret"}
        )

        assert api.db.query(Message).count() == 1

    def test_wrong_secret_still_acknowledged(self, api):
        make_account(api.db, external_app_id="99", secret="s3cret")

        response = api.client.post(
            "/telegram/webhook/99", json=telegram_update(), headers={"X-Telegram-Bot-Api-Secret-Token": "nope"}
        )

        assert response.json() == {"ok": True}
        assert api.db.query(Message).count() == 0

    def test_unknown_bot_still_acknowledged(self, api):
        response = api.client.post("/telegram/webhook/12345", json=telegram_update())

        assert response.status_code == 200
        assert api.db.query(Conversation).count() == 0

    def test_invalid_body_still_acknowledged(self, api):
        response = api.client.post(
            "/telegram/webhook/99", content=b"not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 200
        assert response.json() == {"ok": True}


class TestWhatsAppWebhookEndpoint:
    def _payload(self):
        return {
            "object": "whatsapp_business_account",
            "entry": [
                {
                    "changes": [
                        {
                            "field": "messages",
                            "value": {
                                "metadata": {"phone_number_id": "555"},
                                "contacts": [{"wa_id": "15550001", "profile": {"name": "Bob"}}],
                                "messages": [
                                    {
                                        "from": "15550001",
                                        "id": "wamid.1",
                                        "timestamp": "1700000000",
                                        "type": "text",
                                        "text": {"body": "Hi there"},
                                    }
                                ],
                            },
                        }
                    ]
                }
            ],
        }

    def test_verification_handshake(self, api):
        response = api.client.get(
            "/webhooks/whatsapp",
            params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "1158201444"},
        )

        assert response.status_code == 200
        assert response.text == "1158201444"

    def test_verification_rejects_wrong_token(self, api):
        response = api.client.get(
            "/webhooks/whatsapp",
            params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "1"},
        )

        assert response.status_code == 403

    def test_message_is_stored(self, api):
        make_account(api.db, platform="whatsapp", external_app_id="555", secret=None)

        response = api.client.post("/webhooks/whatsapp", json=self._payload())

        assert response.json() == {"status": "ok"}
        assert api.db.query(Message).one().text == "Hi there"

    def test_bad_signature_is_discarded(self, api):
        make_account(api.db, platform="whatsapp", external_app_id="555", secret=None)
        api.container.settings.whatsapp_app_secret = "app-secret"

        response = api.client.post(
            "/webhooks/whatsapp", json=self._payload(), headers={"X-Hub-Signature-256": "sha256=deadbeef"}
        )

        assert response.json() == {"status": "ok"}
        assert api.db.query(Message).count() == 0

    def test_good_signature_is_accepted(self, api):
        make_account(api.db, platform="whatsapp", external_app_id="555", secret=None)
        api.container.settings.whatsapp_app_secret = "app-secret"
        body = json.dumps(self._payload()).encode()
        signature = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()

        api.client.post(
            "/webhooks/whatsapp",
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": f"sha256={signature}"},
        )

        assert api.db.query(Message).count() == 1


class TestAccounts:
    def test_requires_auth(self, api):
        assert api.client.get("/platform-accounts").status_code == 401

    def test_secrets_are_not_exposed(self, api):
        make_account(api.db, user_id=1, secret="s3cret", token="99:AAA")
        make_account(api.db, user_id=2, external_app_id="100", token="100:BBB")

        response = api.client.get("/platform-accounts", headers=auth(1))

        assert response.status_code == 200
        [account] = response.json()
        assert "access_token" not in account
        assert "webhookSecret" not in account["settings"]
        assert account["settings"]["username"] == "hub_bot"
        assert "s3cret" not in response.text
        assert "99:AAA" not in response.text

    def test_connect_telegram(self, api):
        api.container.telegram.validate_credential = AsyncMock(
            return_value=CredentialInfo("99", "Hub", {"username": "hub_bot", "first_name": "Hub"})
        )
        api.container.telegram.register_webhook = AsyncMock()

        response = api.client.post("/telegram/connect", json={"botToken": "99:AAA"}, headers=auth(1))

        assert response.status_code == 200
        body = response.json()
        assert body["external_app_id"] == "99"
        assert "webhookSecret" not in body["settings"]
        api.container.telegram.register_webhook.assert_not_awaited()
        stored = api.db.query(PlatformAccount).one()
        assert len(stored.settings["webhookSecret"]) == 64
        assert stored.access_token == "99:AAA"

    def test_connect_telegram_registers_webhook(self, api):
        api.container.settings.skip_webhook_registration = False
        api.container.telegram.validate_credential = AsyncMock(return_value=CredentialInfo("99", "Hub", {}))
        api.container.telegram.register_webhook = AsyncMock()

        api.client.post("/telegram/connect", json={"botToken": "99:AAA"}, headers=auth(1))

        stored = api.db.query(PlatformAccount).one()
        api.container.telegram.register_webhook.assert_awaited_once_with(
            "99:AAA", "99", stored.settings["webhookSecret"]
        )

    def test_reconnect_updates_same_account(self, api):
        api.container.telegram.validate_credential = AsyncMock(return_value=CredentialInfo("99", "Hub", {}))

        api.client.post("/telegram/connect", json={"botToken": "99:AAA"}, headers=auth(1))
        api.client.post("/telegram/connect", json={"botToken": "99:NEW"}, headers=auth(1))

        assert api.db.query(PlatformAccount).count() == 1
        assert api.db.query(PlatformAccount).one().access_token == "99:NEW"

    def test_connect_telegram_invalid_token(self, api):
        api.container.telegram.validate_credential = AsyncMock(
            side_effect=PlatformError("telegram", "Unauthorized", status_code=401, body='{"ok":false}')
        )

        response = api.client.post("/telegram/connect", json={"botToken": "bad"}, headers=auth(1))

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid Telegram bot token"

    @patch("chathub.gateways.telegram.httpx.AsyncClient")
    def test_connect_telegram_unreachable(self, mock_client_class, api):
        mock_client = AsyncMock()
        mock_client.get.side_effect = httpx.ConnectError("connection refused")
        mock_client.post.side_effect = httpx.ConnectError("connection refused")
        mock_client_class.return_value.__aenter__.return_value = mock_client

        response = api.client.post("/telegram/connect", json={"botToken": "99:AAA"}, headers=auth(1))

        assert response.status_code == 502
        assert response.json()["detail"] == "Telegram API unavailable"
        assert api.db.query(PlatformAccount).count() == 0

    def test_connect_telegram_upstream_error(self, api):
        api.container.telegram.validate_credential = AsyncMock(
            side_effect=PlatformError("telegram", "Bad Gateway", status_code=502, body="Bad Gateway")
        )

        response = api.client.post("/telegram/connect", json={"botToken": "99:AAA"}, headers=auth(1))

        assert response.status_code == 502

    def test_connect_telegram_webhook_registration_failed(self, api):
        api.container.settings.skip_webhook_registration = False
        api.container.telegram.validate_credential = AsyncMock(return_value=CredentialInfo("99", "Hub", {}))
        api.container.telegram.register_webhook = AsyncMock(
            side_effect=PlatformError("telegram", "Telegram setWebhook rejected: bad webhook", status_code=400)
        )

        response = api.client.post("/telegram/connect", json={"botToken": "99:AAA"}, headers=auth(1))

        assert response.status_code == 502
        assert response.json()["detail"].startswith("Webhook registration failed")
        assert api.db.query(PlatformAccount).count() == 0

    def test_connect_whatsapp_rejected(self, api):
        api.container.whatsapp.validate_credential = AsyncMock(
            side_effect=PlatformError("whatsapp", "WhatsApp credential rejected", status_code=401)
        )

        response = api.client.post(
            "/whatsapp/connect", json={"accessToken": "bad", "phoneNumberId": "555"}, headers=auth(1)
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid WhatsApp credentials"

    def test_connect_whatsapp_unreachable(self, api):
        api.container.whatsapp.validate_credential = AsyncMock(
            side_effect=PlatformError("whatsapp", "Graph API unreachable: ConnectError")
        )

        response = api.client.post(
            "/whatsapp/connect", json={"accessToken": "EAAG", "phoneNumberId": "555"}, headers=auth(1)
        )

        assert response.status_code == 502
        assert response.json()["detail"] == "WhatsApp API unavailable"

    def test_connect_whatsapp_moves_number_to_new_user(self, api):
        api.container.whatsapp.validate_credential = AsyncMock(
            return_value=CredentialInfo("555", "Acme", {"verified_name": "Acme"})
        )

        first = api.client.post(
            "/whatsapp/connect", json={"accessToken": "EAAG", "phoneNumberId": "555"}, headers=auth(1)
        )
        second = api.client.post(
            "/whatsapp/connect", json={"accessToken": "EAAH", "phoneNumberId": "555"}, headers=auth(2)
        )

        assert first.json() == {"connected": True}
        assert second.json() == {"connected": True}
        account = api.db.query(PlatformAccount).one()
        assert account.user_id == 2
        assert account.access_token == "EAAH"


class TestConversationsEndpoints:
    def test_list_conversations(self, api):
        seed_conversation(api.db, user_id=1)
        seed_conversation(api.db, user_id=2, external_app_id="100")

        response = api.client.get("/conversations", headers=auth(1))

        assert response.status_code == 200
        assert [c["external_chat_id"] for c in response.json()] == ["42"]

    def test_filter_by_platform(self, api):
        seed_conversation(api.db, user_id=1)

        assert api.client.get("/conversations?platform=whatsapp", headers=auth(1)).json() == []
        assert len(api.client.get("/telegram/conversations", headers=auth(1)).json()) == 1

    def test_messages_of_owned_conversation(self, api):
        _, conversation = seed_conversation(api.db, user_id=1)

        response = api.client.get(f"/conversations/{conversation.id}/messages", headers=auth(1))

        assert response.status_code == 200
        [message] = response.json()
        assert message["text"] == "Hello"
        assert message["sender_type"] == "client"

    def test_messages_of_foreign_conversation(self, api):
        _, conversation = seed_conversation(api.db, user_id=1)

        response = api.client.get(f"/conversations/{conversation.id}/messages", headers=auth(2))

        assert response.status_code == 404


class TestManualReply:
    def test_telegram_reply(self, api):
        _, conversation = seed_conversation(api.db)
        api.container.telegram.send_text = AsyncMock(return_value={"message_id": 11})

        response = api.client.post(
            "/telegram/reply", json={"conversationId": conversation.id, "text": "On my way"}, headers=auth(1)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["sender_type"] == "bot"
        assert body["delivery_status"] == "sent"
        assert api.container.telegram.send_text.await_args.args[1:] == ("42", "On my way")

    def test_send_failure_is_502_and_not_stored(self, api):
        _, conversation = seed_conversation(api.db)
        api.container.telegram.send_text = AsyncMock(side_effect=PlatformSendError("telegram", 403, "blocked"))

        response = api.client.post(
            "/telegram/reply", json={"conversationId": conversation.id, "text": "On my way"}, headers=auth(1)
        )

        assert response.status_code == 502
        assert response.json()["detail"]["status"] == 403
        assert api.db.query(Message).filter(Message.sender_type == "bot").count() == 0

    def test_platform_mismatch(self, api):
        _, conversation = seed_conversation(api.db, platform="whatsapp", external_app_id="555")

        response = api.client.post(
            "/telegram/reply", json={"conversationId": conversation.id, "text": "Hi"}, headers=auth(1)
        )

        assert response.status_code == 403

    def test_foreign_conversation(self, api):
        _, conversation = seed_conversation(api.db, user_id=1)

        response = api.client.post(
            "/whatsapp/reply", json={"conversationId": conversation.id, "text": "Hi"}, headers=auth(2)
        )

        assert response.status_code == 404

    def test_whatsapp_reply(self, api):
        _, conversation = seed_conversation(api.db, platform="whatsapp", external_app_id="555", chat_id="15550001")
        api.container.whatsapp.send_text = AsyncMock(return_value={"messages": [{"id": "wamid.2"}]})

        response = api.client.post(
            "/whatsapp/reply", json={"conversationId": conversation.id, "text": "Hi"}, headers=auth(1)
        )

        assert response.status_code == 200
        assert api.container.whatsapp.send_text.await_args.args[1] == "15550001"


class TestWhatsAppTestSend:
    def test_no_account(self, api):
        response = api.client.post("/whatsapp/test-send", json={"to": "15550001", "text": "Hi"}, headers=auth(1))
        assert response.status_code == 404

    def test_unknown_contact_is_sent_but_not_stored(self, api):
        make_account(api.db, platform="whatsapp", external_app_id="555", secret=None)
        api.container.whatsapp.send_text = AsyncMock(return_value={})

        response = api.client.post("/whatsapp/test-send", json={"to": "15559999", "text": "Hi"}, headers=auth(1))

        assert response.json() == {"sent": True}
        assert api.db.query(Message).count() == 0

    def test_known_contact_is_stored(self, api):
        seed_conversation(api.db, platform="whatsapp", external_app_id="555", chat_id="15550001")
        api.container.whatsapp.send_text = AsyncMock(return_value={})

        api.client.post("/whatsapp/test-send", json={"to": "15550001", "text": "Hi"}, headers=auth(1))

        assert api.db.query(Message).filter(Message.sender_type == "bot").one().text == "Hi"


class TestAiAssistantEndpoints:
    def test_toggle_auto_reply(self, api):
        assert api.client.get("/ai-assistant/auto-reply/status", headers=auth()).json() == {"enabled": False}

        response = api.client.post("/ai-assistant/auto-reply/enable", json={"enabled": True}, headers=auth())

        assert response.json() == {"enabled": True}
        assert api.container.runtime_state.auto_reply_enabled is True
        assert api.client.get("/ai-assistant/auto-reply/status", headers=auth()).json() == {"enabled": True}

    def test_test_reply(self, api):
        response = api.client.post("/ai-assistant/test-reply", json={"text": "Hello"}, headers=auth())

        assert response.status_code == 200
        assert response.json() == {"reply": "Hi! How can I help?"}

    def test_test_reply_unavailable(self, api):
        api.container.llm.generate = AsyncMock(side_effect=RuntimeError("down"))

        response = api.client.post("/ai-assistant/test-reply", json={"text": "Hello"}, headers=auth())

        assert response.status_code == 503

    def test_manual_auto_reply(self, api):
        _, conversation = seed_conversation(api.db)
        api.container.knowledge.has_knowledge_base = AsyncMock(return_value=False)
        api.container.telegram.send_text = AsyncMock(return_value={})

        response = api.client.post(f"/ai-assistant/conversations/{conversation.id}/auto-reply", headers=auth())

        assert response.status_code == 200
        assert response.json()["text"] == "Hi! How can I help?"

    def test_manual_auto_reply_unavailable(self, api):
        _, conversation = seed_conversation(api.db)
        api.container.knowledge.has_knowledge_base = AsyncMock(return_value=False)
        api.container.llm.generate = AsyncMock(side_effect=RuntimeError("down"))

        response = api.client.post(f"/ai-assistant/conversations/{conversation.id}/auto-reply", headers=auth())

        assert response.status_code == 503


class TestKnowledgeEndpoint:
    def test_answer(self, api):
        api.container.knowledge.answer = AsyncMock(return_value=KnowledgeAnswer("We open at 9.", ["hours"]))

        response = api.client.post("/knowledge/ask", json={"question": "When?"}, headers=auth(5))

        assert response.status_code == 200
        assert response.json() == {"answer": "We open at 9.", "usedChunks": ["hours"]}
        api.container.knowledge.answer.assert_awaited_once_with(5, "When?")

    def test_no_knowledge_base(self, api):
        api.container.knowledge.answer = AsyncMock(side_effect=NoKnowledgeBase(5))

        response = api.client.post("/knowledge/ask", json={"question": "When?"}, headers=auth(5))

        assert response.status_code == 400

    def test_backend_failure(self, api):
        api.container.knowledge.answer = AsyncMock(side_effect=KnowledgeBaseError("qdrant down"))

        response = api.client.post("/knowledge/ask", json={"question": "When?"}, headers=auth(5))

        assert response.status_code == 503
