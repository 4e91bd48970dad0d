from chathub.services.conversation_service import (
    find_or_create_conversation,
    get_owned_conversation,
    list_conversations,
)
from chathub.services.message_service import (
    append_message,
    build_history,
    list_messages,
)
from chathub.services.result import Result
