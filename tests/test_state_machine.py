"""Unit tests for payment and raw-SMS status guardrails."""

import pytest

from momorecon.common.errors import InvalidTransition
from momorecon.common.state_machine import validate_sms_transition, validate_transition


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    validate_transition("pending", "confirmed")
    validate_transition("pending", "manual_review")
    validate_transition("manual_review", "failed")


def test_invalid_transition():
    """Illegal transition must raise to protect settlement correctness."""

    with pytest.raises(ValueError):
        validate_transition("pending", "failed")


@pytest.mark.parametrize("current", ["failed"])
@pytest.mark.parametrize("new", ["pending", "confirmed", "manual_review"])
def test_failed_is_terminal(current, new):
    with pytest.raises(InvalidTransition):
        validate_transition(current, new)


def test_confirmed_can_only_be_reversed():
    validate_transition("confirmed", "failed")
    with pytest.raises(InvalidTransition):
        validate_transition("confirmed", "pending")


def test_sms_transitions():
    validate_sms_transition("received", "parsed")
    validate_sms_transition("parsed", "manual_review")
    validate_sms_transition("manual_review", "error")
    with pytest.raises(InvalidTransition):
        validate_sms_transition("error", "parsed")
    with pytest.raises(InvalidTransition):
        validate_sms_transition("received", "manual_review")
