from datetime import datetime, timezone
from typing import Optional

import httpx
from pydantic import ValidationError

from chathub.errors import PlatformError, PlatformSendError
from chathub.gateways.base import Contact, CredentialInfo, InboundMessage, PlatformGateway
from chathub.logging_config import get_logger
from chathub.schemas.telegram import TelegramBotInfo, TelegramUpdate

logger = get_logger("gateways.telegram")

PLATFORM = "telegram"


class TelegramGateway(PlatformGateway):
    """Bot API client. The token is part of every URL and is never logged."""

    platform = PLATFORM

    def __init__(
        self,
        api_base: str = "https://api.telegram.org",
        app_url: str = "http://localhost:8000",
        timeout_seconds: float = 15.0,
        poll_timeout_seconds: int = 1,
        poll_limit: int = 100,
    ):
        self.api_base = api_base.rstrip("/")
        self.app_url = app_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.poll_timeout_seconds = poll_timeout_seconds
        self.poll_limit = poll_limit

    def _url(self, token: str, method: str) -> str:
        return f"{self.api_base}/bot{token}/{method}"

    async def _call(self, token: str, method: str, payload: Optional[dict] = None, params: Optional[dict] = None):
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                if payload is not None:
                    response = await client.post(self._url(token, method), json=payload)
                else:
                    response = await client.get(self._url(token, method), params=params)
        except httpx.HTTPError as e:
            raise PlatformError(PLATFORM, f"Telegram {method} failed: {e.__class__.__name__}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400 or not data.get("ok"):
            description = data.get("description") or response.text[:200]
            raise PlatformError(
                PLATFORM,
                f"Telegram {method} rejected: {description}",
                status_code=response.status_code,
                body=response.text,
            )
        return data.get("result")

    async def send_text(self, account, recipient: str, text: str) -> dict:
        try:
            return await self._call(account.access_token, "sendMessage", {"chat_id": recipient, "text": text})
        except PlatformError as e:
            raise PlatformSendError(PLATFORM, e.status_code, e.body or str(e)) from e

    async def validate_credential(self, access_token: str, external_app_id: Optional[str] = None) -> CredentialInfo:
        result = await self._call(access_token, "getMe")
        bot = TelegramBotInfo(**(result or {}))
        return CredentialInfo(
            external_app_id=str(bot.id),
            display_name=bot.first_name,
            extra={"username": bot.username, "first_name": bot.first_name},
        )

    async def register_webhook(self, token: str, external_bot_id: str, secret: str) -> None:
        await self._call(
            token,
            "setWebhook",
            {
                "url": f"{self.app_url}/telegram/webhook/{external_bot_id}",
                "secret_token": secret,
                "allowed_updates": ["message"],
            },
        )
        logger.info("Telegram webhook registered", extra={"context": {"bot_id": external_bot_id}})

    async def get_updates(self, token: str, offset: int) -> list[dict]:
        params = {"timeout": self.poll_timeout_seconds, "limit": self.poll_limit}
        if offset > 0:
            params["offset"] = offset
        return await self._call(token, "getUpdates", params=params) or []

    def normalize_update(self, raw: dict) -> list[InboundMessage]:
        try:
            update = TelegramUpdate(**raw)
        except ValidationError as e:
            logger.warning(f"Unparseable Telegram update: {e.error_count()} errors")
            return []

        message = update.message
        if message is None or not message.text:
            return []

        sender = message.from_user
        if sender is not None:
            name_parts = [sender.first_name, sender.last_name]
            username = sender.username
        else:
            name_parts = [message.chat.first_name, message.chat.last_name]
            username = message.chat.username
        display_name = " ".join(p for p in name_parts if p) or message.chat.title

        return [
            InboundMessage(
                contact=Contact(
                    external_chat_id=str(message.chat.id),
                    display_name=display_name,
                    username=username,
                ),
                text=message.text,
                occurred_at=datetime.fromtimestamp(message.date, tz=timezone.utc),
                external_message_id=str(message.message_id),
            )
        ]
