from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.orm import Session

from chathub.errors import ChatHubError, CompletionError, ConversationNotFound, PlatformSendError
from chathub.gateways import GatewayRegistry
from chathub.logging_config import get_logger
from chathub.models import Conversation, Message, PlatformAccount
from chathub.models.message import DELIVERY_FAILED, DELIVERY_SENT, SENDER_BOT
from chathub.services.ai_service import AiAssistant
from chathub.services.conversation_service import get_conversation, get_owned_conversation
from chathub.services.ingestion_service import KeyedLocks, conversation_key
from chathub.services.message_service import append_message, get_latest_message

logger = get_logger("auto_reply_service")


class AutoReplyOrchestrator:
    """Generate a reply, send it to the platform, store it and announce it."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        assistant: AiAssistant,
        gateways: GatewayRegistry,
        broadcaster,
        locks: KeyedLocks,
    ):
        self.session_factory = session_factory
        self.assistant = assistant
        self.gateways = gateways
        self.broadcaster = broadcaster
        self.locks = locks

    async def _deliver(self, db: Session, account: PlatformAccount, conversation: Conversation, text: str) -> Message:
        # A failed send is still stored, marked failed, so the operator sees what the bot tried to say.
        gateway = self.gateways.for_account(account)
        delivery_status = DELIVERY_SENT
        try:
            await gateway.send_text(account, conversation.external_chat_id, text)
        except PlatformSendError as e:
            delivery_status = DELIVERY_FAILED
            logger.error(
                f"Auto-reply send failed: {e}",
                extra={"context": {"conversation_id": conversation.id, "status": e.status_code}},
            )

        async with self.locks.hold(conversation_key(account.id, conversation.external_chat_id)):
            try:
                message = append_message(
                    db,
                    conversation_id=conversation.id,
                    sender_type=SENDER_BOT,
                    text=text,
                    platform=account.platform,
                    timestamp=datetime.now(timezone.utc),
                    delivery_status=delivery_status,
                )
                db.commit()
            except Exception:
                db.rollback()
                raise
            await self.broadcaster.emit_new_message(account.user_id, message)
        return message

    async def auto_reply(self, account_id: int, conversation_id: int, latest_text: str) -> None:
        """Background entry point; opens and closes its own session."""
        db = self.session_factory()
        try:
            conversation = get_conversation(db, conversation_id)
            if conversation is None or conversation.platform_account_id != account_id:
                logger.warning(
                    "Auto-reply skipped: conversation gone", extra={"context": {"conversation_id": conversation_id}}
                )
                return
            account = conversation.platform_account

            result = await self.assistant.generate_reply(db, account.user_id, conversation.id, latest_text)
            if not result.ok:
                logger.error(
                    f"Auto-reply aborted: {result.error}",
                    extra={"context": {"conversation_id": conversation_id, "error_code": result.error_code}},
                )
                return

            message = await self._deliver(db, account, conversation, result.value.text)
            logger.info(
                "Auto-reply stored",
                extra={
                    "context": {
                        "conversation_id": conversation_id,
                        "message_id": message.id,
                        "source": result.value.source,
                        "delivery_status": message.delivery_status,
                    }
                },
            )
        finally:
            db.close()

    async def reply_to_conversation(self, db: Session, user_id: int, conversation_id: int) -> Message:
        """Manual trigger: answer the latest message of an owned conversation."""
        conversation = get_owned_conversation(db, user_id, conversation_id)
        latest = get_latest_message(db, conversation.id)
        if latest is None or not latest.text:
            raise ChatHubError("Conversation has no message to reply to")

        result = await self.assistant.generate_reply(db, user_id, conversation.id, latest.text)
        if not result.ok:
            raise CompletionError(result.error or "AI service unavailable")

        account = conversation.platform_account
        if account is None:
            raise ConversationNotFound(conversation_id)
        return await self._deliver(db, account, conversation, result.value.text)
