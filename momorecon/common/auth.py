"""Admin authorization gate.

Sessions are issued elsewhere; this module only turns an `X-Admin-Session`
token into an immutable `AdminPrincipal` by asking the external session
service, and lets handlers require a permission from its capability set.
"""

from dataclasses import dataclass

import httpx
from fastapi import Depends, Header, HTTPException

from momorecon.common.config import settings
from momorecon.common.errors import PermissionDenied
from momorecon.common.logging import logger


SMS_ATTACH = "sms:attach"
SMS_PARSER_UPDATE = "sms:parser:update"
PAYMENTS_REVERSE = "payments:reverse"
AUDIT_VIEW = "audit:view"


@dataclass(frozen=True)
class AdminPrincipal:
    """Operator identity plus the permissions granted to the session."""

    user_id: str
    permissions: frozenset[str]

    def require(self, permission: str) -> None:
        if permission not in self.permissions:
            raise PermissionDenied(f"missing permission {permission}")


class HttpAdminSessionGate:
    """Resolves session tokens against the external admin session service."""

    def __init__(self, url: str, timeout_seconds: float = 5.0) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds

    async def resolve(self, token: str) -> AdminPrincipal | None:
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            resp = await client.post(self.url, json={"token": token})
        if resp.status_code in (401, 403, 404):
            return None
        resp.raise_for_status()
        body = resp.json()
        user_id = body.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            raise ValueError("admin session response malformed")
        return AdminPrincipal(user_id=user_id, permissions=frozenset(body.get("permissions") or []))


admin_gate = HttpAdminSessionGate(settings.admin_session_url)


async def get_admin_principal(x_admin_session: str | None = Header(default=None)) -> AdminPrincipal:
    """FastAPI dependency resolving the caller's admin session."""

    if not x_admin_session:
        raise HTTPException(status_code=401, detail="admin session required")
    try:
        principal = await admin_gate.resolve(x_admin_session)
    except (httpx.HTTPError, ValueError) as exc:
        logger.error("admin_session_lookup_failed error=%s", exc)
        raise HTTPException(status_code=503, detail="admin session service unavailable") from exc
    if principal is None:
        raise HTTPException(status_code=401, detail="invalid admin session")
    return principal


def require_permission(permission: str):
    """Build a dependency that rejects principals lacking `permission`."""

    async def dependency(principal: AdminPrincipal = Depends(get_admin_principal)) -> AdminPrincipal:
        if permission not in principal.permissions:
            raise HTTPException(status_code=403, detail=f"missing permission {permission}")
        return principal

    return dependency
