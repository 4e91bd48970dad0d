from datetime import datetime, timezone

from sqlalchemy.orm import Session

from chathub.errors import AccountNotConnected, PlatformMismatch
from chathub.gateways import GatewayRegistry
from chathub.logging_config import get_logger
from chathub.models import Message
from chathub.models.message import DELIVERY_SENT, SENDER_BOT
from chathub.services.account_service import first_user_account
from chathub.services.conversation_service import find_conversation_by_chat, get_owned_conversation
from chathub.services.ingestion_service import KeyedLocks, conversation_key
from chathub.services.message_service import append_message

logger = get_logger("reply_service")


class ReplyService:
    """Operator-initiated outbound messages."""

    def __init__(self, gateways: GatewayRegistry, broadcaster, locks: KeyedLocks):
        self.gateways = gateways
        self.broadcaster = broadcaster
        self.locks = locks

    async def _store_sent(self, db: Session, account, conversation, text: str) -> Message:
        async with self.locks.hold(conversation_key(account.id, conversation.external_chat_id)):
            try:
                message = append_message(
                    db,
                    conversation_id=conversation.id,
                    sender_type=SENDER_BOT,
                    text=text,
                    platform=account.platform,
                    timestamp=datetime.now(timezone.utc),
                    delivery_status=DELIVERY_SENT,
                )
                db.commit()
            except Exception:
                db.rollback()
                raise
            await self.broadcaster.emit_new_message(account.user_id, message)
        return message

    async def send_manual_reply(
        self, db: Session, user_id: int, conversation_id: int, text: str, platform: str
    ) -> Message:
        """Send then store. A send failure propagates and nothing is stored."""
        conversation = get_owned_conversation(db, user_id, conversation_id)
        account = conversation.platform_account
        if account.platform != platform:
            raise PlatformMismatch(platform, account.platform)

        await self.gateways.for_account(account).send_text(account, conversation.external_chat_id, text)
        message = await self._store_sent(db, account, conversation, text)
        logger.info(
            "Manual reply sent",
            extra={"context": {"conversation_id": conversation.id, "message_id": message.id}},
        )
        return message

    async def send_test_message(self, db: Session, user_id: int, platform: str, to: str, text: str) -> bool:
        """Send through the user's first account of the platform.

        The message is stored only when a conversation with that contact exists.
        """
        account = first_user_account(db, user_id, platform)
        if account is None:
            raise AccountNotConnected(platform)

        await self.gateways.for_account(account).send_text(account, to, text)

        conversation = find_conversation_by_chat(db, account.id, to)
        if conversation is not None:
            await self._store_sent(db, account, conversation, text)
        return True
