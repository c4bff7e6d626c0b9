"""Status vocabularies and allowed transitions for payments and raw SMS."""

from momorecon.common.errors import InvalidTransition


PAYMENT_PENDING = "pending"
PAYMENT_MANUAL_REVIEW = "manual_review"
PAYMENT_CONFIRMED = "confirmed"
PAYMENT_FAILED = "failed"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PAYMENT_PENDING: {PAYMENT_CONFIRMED, PAYMENT_MANUAL_REVIEW},
    PAYMENT_MANUAL_REVIEW: {PAYMENT_CONFIRMED, PAYMENT_FAILED},
    # Administrative refund / reversal.
    PAYMENT_CONFIRMED: {PAYMENT_FAILED},
    PAYMENT_FAILED: set(),
}

SMS_RECEIVED = "received"
SMS_PARSED = "parsed"
SMS_ERROR = "error"
SMS_MANUAL_REVIEW = "manual_review"

SMS_TRANSITIONS: dict[str, set[str]] = {
    SMS_RECEIVED: {SMS_PARSED, SMS_ERROR},
    SMS_PARSED: {SMS_MANUAL_REVIEW},
    SMS_MANUAL_REVIEW: {SMS_PARSED, SMS_ERROR},
    SMS_ERROR: set(),
}


def validate_transition(current: str, new: str) -> None:
    """Raise when a payment transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}")


def validate_sms_transition(current: str, new: str) -> None:
    """Raise when a raw SMS ingest-status transition is not allowed."""

    if new not in SMS_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Invalid SMS transition: {current} -> {new}")


# Manual review lanes: the operator worklist and the low-confidence triage pile.
LANE_WORKLIST = "worklist"
LANE_TRIAGE = "triage"
