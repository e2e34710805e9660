"""Unit tests for order state-machine guardrails."""

import pytest

from storepay.common.state_machine import (
    CANCELLED,
    COMPLETED,
    PAID,
    PENDING,
    REFUNDED,
    TERMINAL_STATES,
    InvalidTransition,
    validate_transition,
)


@pytest.mark.parametrize(
    "current,new",
    [(PENDING, PAID), (PENDING, CANCELLED), (PAID, COMPLETED), (PAID, REFUNDED), (COMPLETED, REFUNDED)],
)
def test_valid_transition(current, new):
    validate_transition(current, new)


@pytest.mark.parametrize(
    "current,new",
    [(PENDING, COMPLETED), (PAID, CANCELLED), (COMPLETED, PAID), (CANCELLED, PAID), (REFUNDED, COMPLETED)],
)
def test_invalid_transition(current, new):
    """Illegal transitions raise so a stale worker cannot rewind an order."""

    with pytest.raises(InvalidTransition):
        validate_transition(current, new)


def test_terminal_states_have_no_exits():
    assert TERMINAL_STATES == {CANCELLED, REFUNDED}


def test_invalid_transition_is_a_value_error():
    with pytest.raises(ValueError):
        validate_transition("unknown", PAID)
