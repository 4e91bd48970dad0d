from typing import Optional


class ChatHubError(Exception):
    """Base class for errors raised by chathub services."""


class NotFoundError(ChatHubError):
    pass


class ConversationNotFound(NotFoundError):
    def __init__(self, conversation_id=None):
        self.conversation_id = conversation_id
        super().__init__("Conversation not found")


class AccountNotConnected(NotFoundError):
    def __init__(self, platform: str):
        self.platform = platform
        super().__init__(f"No {platform} account connected")


class PlatformMismatch(ChatHubError):
    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Conversation does not belong to a {expected} account")


class PlatformError(ChatHubError):
    """An upstream messaging platform rejected a call or could not be reached."""

    def __init__(self, platform: str, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        self.platform = platform
        self.status_code = status_code
        self.body = body
        super().__init__(message)

    @property
    def is_rejection(self) -> bool:
        """True when the platform answered and refused the request, False when it was unreachable or failing."""
        return self.status_code is not None and self.status_code < 500


class WebhookRegistrationError(PlatformError):
    pass


class PlatformSendError(PlatformError):
    def __init__(self, platform: str, status_code: Optional[int], body: Optional[str]):
        super().__init__(
            platform,
            f"{platform} send failed: status={status_code} body={(body or '')[:500]}",
            status_code=status_code,
            body=body,
        )


class CompletionError(ChatHubError):
    """Chat completion backend failed or returned nothing usable."""


class KnowledgeBaseError(ChatHubError):
    pass


class NoKnowledgeBase(KnowledgeBaseError):
    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__("No knowledge base found for this user. Please upload a document first.")
