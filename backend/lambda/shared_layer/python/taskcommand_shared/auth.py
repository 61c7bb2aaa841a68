"""taskcommand_shared.auth — Bearer-token auth gate.

Authentication runs before authorization, and authorization only runs for
authenticated callers. Decisions are made fresh for every request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from taskcommand_shared.errors import GatewayError, IdentityUnavailableError
from taskcommand_shared.identity import IdentityValidator

logger = logging.getLogger(__name__)

__all__ = [
    "AuthGate",
    "AuthorizationDecision",
    "_extract_bearer",
]

_BEARER_SCHEME = "bearer"


@dataclass(frozen=True)
class AuthorizationDecision:
    is_authenticated: bool
    is_authorized_role: bool


def _extract_bearer(header_value: Optional[str]) -> Optional[str]:
    """Strip the ``Bearer`` scheme from an Authorization header value."""
    if header_value is None:
        return None
    parts = str(header_value).split(None, 1)
    if not parts:
        return None
    if parts[0].lower() == _BEARER_SCHEME:
        return parts[1].strip() if len(parts) > 1 and parts[1].strip() else None
    return str(header_value).strip() or None


class AuthGate:
    def __init__(self, identity: IdentityValidator) -> None:
        self.identity = identity

    def authorize(self, authorization_header: Optional[str]) -> AuthorizationDecision:
        """Return a positive decision or raise the matching GatewayError.

        Raises:
            GatewayError: ``unauthenticated`` for a missing or rejected token,
                ``unauthorized`` for a valid token without the manager role,
                ``dependency`` when the identity provider cannot answer.
        """
        if authorization_header is None or not str(authorization_header).strip():
            raise GatewayError.unauthenticated("Authorization header required")

        token = _extract_bearer(authorization_header)
        if not token:
            raise GatewayError.unauthenticated("Authorization header with Bearer token required")

        try:
            if not self.identity.validate(token):
                raise GatewayError.unauthenticated("Invalid or expired token")
            if not self.identity.is_privileged_role(token):
                raise GatewayError.unauthorized("Insufficient permissions - manager role required")
        except IdentityUnavailableError as exc:
            logger.error("identity provider unavailable: %s", exc)
            raise GatewayError.dependency("Failed to complete task", f"Identity provider unavailable: {exc}") from exc

        return AuthorizationDecision(is_authenticated=True, is_authorized_role=True)
