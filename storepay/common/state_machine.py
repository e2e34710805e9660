"""Order state machine transitions enforced by the order service."""

PENDING = "pending"
PAID = "paid"
COMPLETED = "completed"
CANCELLED = "cancelled"
REFUNDED = "refunded"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {PAID, CANCELLED},
    PAID: {COMPLETED, REFUNDED},
    COMPLETED: {REFUNDED},
    CANCELLED: set(),
    REFUNDED: set(),
}

TERMINAL_STATES = frozenset(state for state, targets in ALLOWED_TRANSITIONS.items() if not targets)


class InvalidTransition(ValueError):
    """Raised when an order is asked to move along an edge that does not exist."""


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}")
