from chathub.schemas.chat import ConversationOut, MessageOut, PlatformAccountOut
from chathub.schemas.telegram import TelegramUpdate
from chathub.schemas.whatsapp import WhatsAppWebhookPayload

__all__ = ["ConversationOut", "MessageOut", "PlatformAccountOut", "TelegramUpdate", "WhatsAppWebhookPayload"]
