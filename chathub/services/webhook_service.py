import hashlib
import hmac
from typing import Optional

from sqlalchemy.orm import Session

from chathub.gateways import TelegramGateway, WhatsAppGateway
from chathub.logging_config import get_logger
from chathub.services.account_service import TELEGRAM, WHATSAPP, get_account_by_external_id
from chathub.services.ingestion_service import IngestionPipeline

logger = get_logger("webhook_service")


def secrets_match(expected: Optional[str], presented: Optional[str]) -> bool:
    if not expected or not presented:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))


def verify_whatsapp_signature(app_secret: str, body: bytes, signature_header: Optional[str]) -> bool:
    """Check the Meta X-Hub-Signature-256 header against the raw body."""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header.removeprefix("sha256="))


def verify_whatsapp_subscription(
    mode: Optional[str], token: Optional[str], challenge: Optional[str], verify_token: Optional[str]
) -> Optional[str]:
    """Return the challenge to echo when Meta's subscription handshake is valid."""
    if mode == "subscribe" and verify_token and secrets_match(verify_token, token):
        return challenge or ""
    return None


class TelegramWebhookHandler:
    def __init__(self, pipeline: IngestionPipeline, gateway: TelegramGateway):
        self.pipeline = pipeline
        self.gateway = gateway

    async def handle(self, db: Session, external_bot_id: str, raw_update: dict, presented_secret: Optional[str]) -> int:
        """Ingest one Telegram update. Never raises; returns the number of stored messages."""
        context = {"bot_id": external_bot_id, "update_id": raw_update.get("update_id")}
        try:
            account = get_account_by_external_id(db, TELEGRAM, external_bot_id)
            if account is None:
                logger.warning("Update for unknown bot discarded", extra={"context": context})
                return 0

            expected_secret = account.webhook_secret
            if expected_secret and not secrets_match(expected_secret, presented_secret):
                logger.warning("Webhook secret mismatch, update discarded", extra={"context": context})
                return 0

            stored = 0
            for inbound in self.gateway.normalize_update(raw_update):
                await self.pipeline.ingest(
                    db,
                    account,
                    inbound.contact,
                    inbound.text,
                    inbound.occurred_at,
                    external_message_id=inbound.external_message_id,
                )
                stored += 1
            return stored
        except Exception as e:
            logger.error(f"Telegram update failed: {e}", extra={"context": context}, exc_info=True)
            return 0


class WhatsAppWebhookHandler:
    def __init__(self, pipeline: IngestionPipeline, gateway: WhatsAppGateway):
        self.pipeline = pipeline
        self.gateway = gateway

    async def handle(self, db: Session, payload: dict) -> int:
        """Ingest every text message in a Cloud API notification. Never raises."""
        try:
            inbound_messages = self.gateway.normalize_update(payload)
        except Exception as e:
            logger.error(f"WhatsApp payload rejected: {e}", exc_info=True)
            return 0

        accounts = {}
        stored = 0
        for inbound in inbound_messages:
            phone_number_id = inbound.external_app_id
            context = {"phone_number_id": phone_number_id, "message_id": inbound.external_message_id}
            try:
                if phone_number_id not in accounts:
                    accounts[phone_number_id] = (
                        get_account_by_external_id(db, WHATSAPP, phone_number_id) if phone_number_id else None
                    )
                account = accounts[phone_number_id]
                if account is None:
                    logger.warning("Message for unknown WhatsApp number discarded", extra={"context": context})
                    continue

                await self.pipeline.ingest(
                    db,
                    account,
                    inbound.contact,
                    inbound.text,
                    inbound.occurred_at,
                    external_message_id=inbound.external_message_id,
                )
                stored += 1
            except Exception as e:
                logger.error(f"WhatsApp message failed: {e}", extra={"context": context}, exc_info=True)
        return stored
