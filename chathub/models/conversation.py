from sqlalchemy import Column, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from chathub.database import Base


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("platform_account_id", "external_chat_id", name="uq_conversations_account_chat"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    platform_account_id = Column(Integer, ForeignKey("platform_accounts.id"), nullable=False)
    platform = Column(Text, nullable=False)
    external_chat_id = Column(Text, nullable=False)  # telegram chat id, whatsapp wa_id
    contact_name = Column(Text)
    contact_username = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    platform_account = relationship("PlatformAccount", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation")
