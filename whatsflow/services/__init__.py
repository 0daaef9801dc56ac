from whatsflow.services.buffer_state import (
    BufferStatus,
    InvalidTransitionError,
    can_transition,
    transition,
)
from whatsflow.services.conversation_service import (
    get_or_create_conversation,
    save_message,
)
from whatsflow.services.result import Result
