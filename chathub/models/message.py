from sqlalchemy import Column, ForeignKey, Index, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.orm import relationship

from chathub.database import Base

SENDER_CLIENT = "client"
SENDER_BOT = "bot"

DELIVERY_SENT = "sent"
DELIVERY_FAILED = "failed"


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (Index("ix_messages_conversation_timestamp", "conversation_id", "timestamp"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False)
    sender_type = Column(Text, nullable=False)  # client, bot
    text = Column(Text)
    platform = Column(Text, nullable=False)
    external_message_id = Column(Text)
    timestamp = Column(TIMESTAMP(timezone=True), nullable=False)
    delivery_status = Column(Text)  # sent, failed (outbound only)

    conversation = relationship("Conversation", back_populates="messages")
