from sqlalchemy import JSON, Column, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from chathub.database import Base


class PlatformAccount(Base):
    __tablename__ = "platform_accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    platform = Column(Text, nullable=False)  # telegram, whatsapp
    access_token = Column(Text, nullable=False)
    external_app_id = Column(Text, index=True)  # telegram bot id / whatsapp phone_number_id
    settings = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    conversations = relationship("Conversation", back_populates="platform_account")

    @property
    def webhook_secret(self):
        return (self.settings or {}).get("webhookSecret")
