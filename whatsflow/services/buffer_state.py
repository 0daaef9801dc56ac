from enum import Enum


class BufferStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    SKIPPED = "skipped"


# Terminal states have no outgoing transitions: no automatic re-queue.
VALID_TRANSITIONS = {
    BufferStatus.PENDING: [BufferStatus.PROCESSED, BufferStatus.SKIPPED],
    BufferStatus.PROCESSED: [],
    BufferStatus.SKIPPED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_status: BufferStatus, to_status: BufferStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid buffer transition: {from_status.value} -> {to_status.value}")


def can_transition(from_status: BufferStatus, to_status: BufferStatus) -> bool:
    """Check if transition is valid."""
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def transition(from_status: BufferStatus, to_status: BufferStatus) -> BufferStatus:
    """Perform status transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)
    return to_status


def is_terminal(status: BufferStatus) -> bool:
    return not VALID_TRANSITIONS.get(status)
