"""taskcommand_shared.identity — Identity collaborators behind a two-method contract.

Any object with ``validate(token) -> bool`` and ``is_privileged_role(token) -> bool``
can back the auth gate. ``False`` means "the provider answered no"; a provider
that cannot answer raises ``IdentityUnavailableError`` instead.

Backends:
    GraphIdentityValidator    Microsoft Graph ``/me`` + ``/me/memberOf`` with the caller's token
    CognitoIdentityValidator  RS256 Cognito JWT verified against the pool JWKS
"""

from __future__ import annotations

import json
import logging
import threading
import time
import urllib.error
import urllib.request
from typing import Any, Dict, Iterable, Optional, Protocol, runtime_checkable

import jwt
from jwt.algorithms import RSAAlgorithm

from taskcommand_shared.errors import IdentityUnavailableError
from taskcommand_shared.graph_client import GraphClient, GraphHTTPError, GraphTransportError, _SSL_CONTEXT

logger = logging.getLogger(__name__)

__all__ = [
    "CognitoIdentityValidator",
    "GraphIdentityValidator",
    "IdentityValidator",
]


@runtime_checkable
class IdentityValidator(Protocol):
    """Verifies bearer credentials and privileged-role membership."""

    def validate(self, token: str) -> bool:
        """Return True when the token is genuine and unexpired."""

    def is_privileged_role(self, token: str) -> bool:
        """Return True when the token's principal holds the manager role."""


# ---------------------------------------------------------------------------
# Microsoft Graph
# ---------------------------------------------------------------------------

# Graph answers these for a bad/expired/under-scoped user token.
_GRAPH_REJECTED_STATUSES = {400, 401, 403}


class GraphIdentityValidator:
    """Validates a delegated Graph token by asking Graph who the caller is.

    With no ``manager_group`` configured every authenticated caller counts as
    a manager.
    """

    def __init__(self, client: GraphClient, manager_group: str = "") -> None:
        self.client = client
        self.manager_group = manager_group.strip()

    def validate(self, token: str) -> bool:
        try:
            user = self.client.get("/me", token, query={"$select": "id,displayName,userPrincipalName,mail"})
        except GraphHTTPError as exc:
            if exc.status in _GRAPH_REJECTED_STATUSES:
                logger.warning("Token validation rejected by Graph (%s)", exc.status)
                return False
            raise IdentityUnavailableError(str(exc)) from exc
        except GraphTransportError as exc:
            raise IdentityUnavailableError(str(exc)) from exc
        return bool(user and user.get("id"))

    def is_privileged_role(self, token: str) -> bool:
        if not self.manager_group:
            return True

        wanted = self.manager_group.lower()
        path: Optional[str] = "/me/memberOf"
        query: Optional[Dict[str, str]] = {"$select": "id,displayName"}
        while path:
            try:
                page = self.client.get(path, token, query=query) or {}
            except GraphHTTPError as exc:
                if exc.status in _GRAPH_REJECTED_STATUSES:
                    return False
                raise IdentityUnavailableError(str(exc)) from exc
            except GraphTransportError as exc:
                raise IdentityUnavailableError(str(exc)) from exc

            for group in page.get("value") or []:
                if str(group.get("displayName") or "").lower() == wanted or str(group.get("id") or "").lower() == wanted:
                    return True

            next_link = page.get("@odata.nextLink")
            if not next_link:
                break
            # nextLink is absolute and already carries the query string.
            path = next_link[len(self.client.api_base):] if next_link.startswith(self.client.api_base) else None
            query = None
            if path is None:
                logger.warning("Ignoring memberOf nextLink outside %s", self.client.api_base)
        return False


# ---------------------------------------------------------------------------
# Cognito
# ---------------------------------------------------------------------------

_JWKS_TTL = 3600.0


class CognitoIdentityValidator:
    """Verifies Cognito ID tokens locally against the pool's JWKS.

    Only the signing keys are cached; the verification result for a token is
    recomputed on every call.
    """

    def __init__(
        self,
        user_pool_id: str,
        client_id: str = "",
        manager_group: str = "",
        *,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.user_pool_id = user_pool_id
        self.client_id = client_id
        self.manager_group = manager_group.strip()
        self.timeout_seconds = timeout_seconds
        self._jwks_cache: Dict[str, Any] = {}
        self._jwks_fetched_at = 0.0
        self._lock = threading.Lock()

    @property
    def issuer(self) -> str:
        region = self.user_pool_id.split("_")[0]
        return f"https://cognito-idp.{region}.amazonaws.com/{self.user_pool_id}"

    def _get_jwks(self) -> Dict[str, Any]:
        """Fetch (and cache) the user pool signing keys."""
        with self._lock:
            now = time.time()
            if self._jwks_cache and (now - self._jwks_fetched_at) < _JWKS_TTL:
                return self._jwks_cache

            url = f"{self.issuer}/.well-known/jwks.json"
            try:
                with urllib.request.urlopen(url, timeout=self.timeout_seconds, context=_SSL_CONTEXT) as resp:
                    data = json.loads(resp.read())
            except (urllib.error.URLError, TimeoutError, OSError, json.JSONDecodeError) as exc:
                raise IdentityUnavailableError(f"JWKS fetch failed: {exc}") from exc

            new_cache: Dict[str, Any] = {}
            try:
                for key_data in data.get("keys", []):
                    new_cache[key_data["kid"]] = RSAAlgorithm.from_jwk(json.dumps(key_data))
            except (KeyError, TypeError, AttributeError, jwt.PyJWTError) as exc:
                raise IdentityUnavailableError(f"JWKS response is malformed: {exc}") from exc

            self._jwks_cache = new_cache
            self._jwks_fetched_at = now
            return self._jwks_cache

    def _claims(self, token: str) -> Optional[Dict[str, Any]]:
        """Verified claims, or None when the token is not acceptable."""
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            logger.warning("Invalid token header: %s", exc)
            return None

        if header.get("alg", "RS256") != "RS256":
            logger.warning("Unexpected token algorithm: %s", header.get("alg"))
            return None

        key = self._get_jwks().get(header.get("kid"))
        if key is None:
            logger.warning("Token key ID not found in JWKS")
            return None

        options = {"verify_exp": True, "verify_aud": bool(self.client_id)}
        try:
            return jwt.decode(
                token,
                key,
                algorithms=["RS256"],
                audience=self.client_id or None,
                issuer=self.issuer,
                options=options,
            )
        except jwt.ExpiredSignatureError:
            logger.warning("Token has expired")
            return None
        except jwt.PyJWTError as exc:
            logger.warning("Token validation failed: %s", exc)
            return None

    def validate(self, token: str) -> bool:
        return self._claims(token) is not None

    def is_privileged_role(self, token: str) -> bool:
        claims = self._claims(token)
        if claims is None:
            return False
        if not self.manager_group:
            return True
        groups: Iterable[str] = claims.get("cognito:groups") or []
        return self.manager_group.lower() in {str(g).lower() for g in groups}
