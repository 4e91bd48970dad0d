from typing import Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from chathub.errors import ConversationNotFound
from chathub.gateways.base import Contact
from chathub.logging_config import get_logger
from chathub.models import Conversation, PlatformAccount

logger = get_logger("conversation_service")


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Unsupported database dialect: {dialect}")


def find_or_create_conversation(db: Session, account: PlatformAccount, contact: Contact) -> tuple[Conversation, bool]:
    """Return the conversation for (account, chat) and whether this call created it.

    Uses INSERT ... ON CONFLICT DO NOTHING against the unique constraint so
    concurrent deliveries for a new chat produce exactly one row. Contact
    fields of an existing conversation are left as first seen.
    """
    insert = _insert_for(db)
    stmt = (
        insert(Conversation)
        .values(
            platform_account_id=account.id,
            platform=account.platform,
            external_chat_id=contact.external_chat_id,
            contact_name=contact.display_name,
            contact_username=contact.username,
        )
        .on_conflict_do_nothing(index_elements=["platform_account_id", "external_chat_id"])
    )
    result = db.execute(stmt)
    is_new = result.rowcount > 0

    conversation = (
        db.query(Conversation)
        .filter(
            Conversation.platform_account_id == account.id,
            Conversation.external_chat_id == contact.external_chat_id,
        )
        .one()
    )

    if is_new:
        logger.info(
            "Conversation created",
            extra={"context": {"conversation_id": conversation.id, "platform": account.platform}},
        )
    return conversation, is_new


def get_conversation(db: Session, conversation_id: int) -> Optional[Conversation]:
    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def get_owned_conversation(db: Session, user_id: int, conversation_id: int) -> Conversation:
    """Load a conversation only if it belongs to one of the user's accounts."""
    conversation = (
        db.query(Conversation)
        .join(PlatformAccount, Conversation.platform_account_id == PlatformAccount.id)
        .filter(Conversation.id == conversation_id, PlatformAccount.user_id == user_id)
        .first()
    )
    if conversation is None:
        raise ConversationNotFound(conversation_id)
    return conversation


def list_conversations(db: Session, user_id: int, platform: Optional[str] = None) -> list[Conversation]:
    query = (
        db.query(Conversation)
        .join(PlatformAccount, Conversation.platform_account_id == PlatformAccount.id)
        .filter(PlatformAccount.user_id == user_id)
    )
    if platform:
        query = query.filter(Conversation.platform == platform)
    return query.order_by(Conversation.created_at.desc(), Conversation.id.desc()).all()


def find_conversation_by_chat(db: Session, account_id: int, external_chat_id: str) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(
            Conversation.platform_account_id == account_id,
            Conversation.external_chat_id == external_chat_id,
        )
        .first()
    )
