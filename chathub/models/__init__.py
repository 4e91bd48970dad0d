from chathub.models.conversation import Conversation
from chathub.models.message import Message
from chathub.models.platform_account import PlatformAccount

__all__ = [
    "PlatformAccount",
    "Conversation",
    "Message",
]
