from datetime import datetime, timezone
from typing import Optional

import httpx
from pydantic import ValidationError

from chathub.errors import PlatformError, PlatformSendError
from chathub.gateways.base import Contact, CredentialInfo, InboundMessage, PlatformGateway
from chathub.logging_config import get_logger
from chathub.schemas.whatsapp import WhatsAppWebhookPayload

logger = get_logger("gateways.whatsapp")

PLATFORM = "whatsapp"
BUSINESS_ACCOUNT_OBJECT = "whatsapp_business_account"


class WhatsAppGateway(PlatformGateway):
    """WhatsApp Cloud API (Graph API) client."""

    platform = PLATFORM

    def __init__(self, api_base: str = "https://graph.facebook.com/v20.0", timeout_seconds: float = 15.0):
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds

    async def send_text(self, account, recipient: str, text: str) -> dict:
        url = f"{self.api_base}/{account.external_app_id}/messages"
        payload = {
            "messaging_product": "whatsapp",
            "to": recipient,
            "type": "text",
            "text": {"body": text},
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    url,
                    headers={"Authorization": f"Bearer {account.access_token}"},
                    json=payload,
                )
        except httpx.HTTPError as e:
            raise PlatformSendError(PLATFORM, None, f"{e.__class__.__name__}: {e}") from e

        if response.status_code >= 400:
            logger.error(
                "WhatsApp send failed",
                extra={"context": {"status": response.status_code, "phone_number_id": account.external_app_id}},
            )
            raise PlatformSendError(PLATFORM, response.status_code, response.text)
        return response.json()

    async def validate_credential(self, access_token: str, external_app_id: Optional[str] = None) -> CredentialInfo:
        if not external_app_id:
            raise PlatformError(PLATFORM, "phone_number_id is required", status_code=400)
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.get(
                    f"{self.api_base}/{external_app_id}",
                    headers={"Authorization": f"Bearer {access_token}"},
                    params={"fields": "display_phone_number,verified_name"},
                )
        except httpx.HTTPError as e:
            raise PlatformError(PLATFORM, f"Graph API unreachable: {e.__class__.__name__}") from e

        if response.status_code >= 400:
            raise PlatformError(
                PLATFORM,
                "WhatsApp credential rejected",
                status_code=response.status_code,
                body=response.text,
            )
        data = response.json()
        extra = {k: data[k] for k in ("display_phone_number", "verified_name") if data.get(k)}
        return CredentialInfo(
            external_app_id=str(external_app_id),
            display_name=data.get("verified_name"),
            extra=extra,
        )

    def normalize_update(self, raw: dict) -> list[InboundMessage]:
        try:
            payload = WhatsAppWebhookPayload(**raw)
        except ValidationError as e:
            logger.warning(f"Unparseable WhatsApp payload: {e.error_count()} errors")
            return []

        if payload.object != BUSINESS_ACCOUNT_OBJECT:
            return []

        inbound = []
        for entry in payload.entry:
            for change in entry.changes:
                if change.field != "messages":
                    continue
                value = change.value
                phone_number_id = value.metadata.phone_number_id if value.metadata else None
                names = {c.wa_id: (c.profile.name if c.profile else None) for c in value.contacts}

                for message in value.messages:
                    if message.type != "text" or message.text is None or not message.text.body:
                        continue
                    try:
                        occurred_at = datetime.fromtimestamp(int(message.timestamp), tz=timezone.utc)
                    except ValueError:
                        occurred_at = datetime.now(timezone.utc)
                    inbound.append(
                        InboundMessage(
                            contact=Contact(
                                external_chat_id=message.from_,
                                display_name=names.get(message.from_),
                                username=message.from_,
                            ),
                            text=message.text.body,
                            occurred_at=occurred_at,
                            external_message_id=message.id,
                            external_app_id=phone_number_id,
                        )
                    )
        return inbound
