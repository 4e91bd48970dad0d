from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass
class Contact:
    external_chat_id: str
    display_name: Optional[str] = None
    username: Optional[str] = None


@dataclass
class InboundMessage:
    """One text message extracted from a platform payload."""

    contact: Contact
    text: str
    occurred_at: datetime
    external_message_id: Optional[str] = None
    external_app_id: Optional[str] = None  # set when the payload names the receiving account


@dataclass
class CredentialInfo:
    external_app_id: str
    display_name: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)


class PlatformGateway(ABC):
    """Outbound calls and payload normalization for one messaging platform."""

    platform: str

    @abstractmethod
    async def send_text(self, account, recipient: str, text: str) -> dict:
        """Send a text message. Raises PlatformSendError on any failure."""
        pass

    @abstractmethod
    async def validate_credential(self, access_token: str, external_app_id: Optional[str] = None) -> CredentialInfo:
        """Check a credential against the platform. Raises PlatformError on rejection."""
        pass

    @abstractmethod
    def normalize_update(self, raw: dict) -> list[InboundMessage]:
        """Extract text messages from a raw webhook/polling payload."""
        pass
