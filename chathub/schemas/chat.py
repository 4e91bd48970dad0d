from datetime import datetime
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# Keys inside PlatformAccount.settings that must never leave the server.
PRIVATE_SETTINGS_KEYS = frozenset({"webhookSecret"})


class PlatformAccountOut(BaseModel):
    id: int
    user_id: int
    platform: str
    external_app_id: Optional[str] = None
    settings: dict[str, Any] = {}
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account) -> "PlatformAccountOut":
        settings = {k: v for k, v in (account.settings or {}).items() if k not in PRIVATE_SETTINGS_KEYS}
        return cls(
            id=account.id,
            user_id=account.user_id,
            platform=account.platform,
            external_app_id=account.external_app_id,
            settings=settings,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class ConversationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    platform_account_id: int
    platform: str
    external_chat_id: str
    contact_name: Optional[str] = None
    contact_username: Optional[str] = None
    created_at: Optional[datetime] = None


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    conversation_id: int
    sender_type: str
    text: Optional[str] = None
    platform: str
    external_message_id: Optional[str] = None
    timestamp: datetime
    delivery_status: Optional[str] = None


class ConnectBotRequest(BaseModel):
    bot_token: str = Field(min_length=1, validation_alias=AliasChoices("botToken", "bot_token"))


class ConnectWhatsAppRequest(BaseModel):
    access_token: str = Field(min_length=1, validation_alias=AliasChoices("accessToken", "access_token"))
    phone_number_id: str = Field(min_length=1, validation_alias=AliasChoices("phoneNumberId", "phone_number_id"))


class ConnectWhatsAppResponse(BaseModel):
    connected: bool


class ReplyRequest(BaseModel):
    conversation_id: int = Field(validation_alias=AliasChoices("conversationId", "conversation_id"))
    text: str = Field(min_length=1)


class TestSendRequest(BaseModel):
    to: str = Field(min_length=1)
    text: str = Field(min_length=1)


class TestSendResponse(BaseModel):
    sent: bool


class TestReplyRequest(BaseModel):
    text: str = Field(min_length=1)


class ReplyTextResponse(BaseModel):
    reply: str


class AutoReplyToggle(BaseModel):
    enabled: bool


class AskQuestionRequest(BaseModel):
    question: str = Field(min_length=1)


class AskQuestionResponse(BaseModel):
    answer: str
    used_chunks: list[str] = Field(default_factory=list, serialization_alias="usedChunks")


class WebhookAck(BaseModel):
    ok: bool = True
