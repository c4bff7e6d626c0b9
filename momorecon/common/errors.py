"""Error taxonomy for the reconciliation core.

HTTP layers map these to status codes with `http_status_for`; workers log them
and update record status without crashing the consumer loop.
"""


class ReconciliationError(Exception):
    """Base class for expected, domain-level failures."""

    status_code = 400


class IngestionError(ReconciliationError):
    """Inbound SMS payload is malformed. Never retried server-side."""

    status_code = 400


class ParseFailure(ReconciliationError):
    """SMS text matched no carrier template and yielded no amount."""

    status_code = 422


class MatchConflict(ReconciliationError):
    """SMS or payment was already resolved; nothing was changed."""

    status_code = 409


class NotFound(ReconciliationError):
    """Unknown SMS, payment or prompt id."""

    status_code = 404


class PermissionDenied(ReconciliationError):
    """Caller's capability set lacks the permission an action requires."""

    status_code = 403


class InvalidTransition(ReconciliationError, ValueError):
    """Requested status change is not allowed from the current status."""

    status_code = 409


def http_status_for(exc: ReconciliationError) -> int:
    return getattr(exc, "status_code", 400)
