"""Appointment lifecycle states and the transitions allowed between them"""

from ...errors import StateTransitionError

PENDING = "pending"
CONFIRMED = "confirmed"
COMPLETED = "completed"
CANCELLED = "cancelled"
REJECTED = "rejected"

# Statuses that hold a slot
LIVE_STATUSES = (PENDING, CONFIRMED)
TERMINAL_STATUSES = (COMPLETED, CANCELLED, REJECTED)
# Statuses that consume a plan session
CONSUMING_STATUSES = (CONFIRMED, COMPLETED)

VALID_TRANSITIONS = {
    PENDING: (CONFIRMED, CANCELLED, REJECTED),
    CONFIRMED: (COMPLETED, CANCELLED),
    COMPLETED: (),
    CANCELLED: (),
    REJECTED: (),
}

CONSULTATION_METHODS = ("video", "audio", "chat", "in_person")
REALTIME_METHODS = ("video", "audio")
SESSION_FORMATS = ("one_to_one", "one_to_many")


def validate_status_transition(current_status: str, new_status: str) -> bool:
    """True if the appointment may move from current_status to new_status"""
    return new_status in VALID_TRANSITIONS.get(current_status, ())


def ensure_transition(current_status: str, new_status: str) -> None:
    if not validate_status_transition(current_status, new_status):
        raise StateTransitionError(current_status, new_status)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES
