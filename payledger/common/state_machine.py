"""Job state machine transitions shared by payment and payroll jobs."""

from payledger.common.errors import InvalidTransition


PENDING = "pending"
PROCESSING = "processing"
SUCCEEDED = "succeeded"
FAILED = "failed"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {PROCESSING, FAILED},
    PROCESSING: {SUCCEEDED, FAILED},
    SUCCEEDED: set(),
    FAILED: {PENDING},
}

TERMINAL_STATUSES = {SUCCEEDED, FAILED}


def is_valid_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if not is_valid_transition(current, new):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}", from_status=current, to_status=new)
