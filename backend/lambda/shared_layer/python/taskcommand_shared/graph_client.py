"""taskcommand_shared.graph_client — Minimal Microsoft Graph REST client over urllib.

Two kinds of callers use it:
    - the identity validator, which calls Graph with the *caller's* bearer token
    - the Planner task store, which calls Graph with the gateway's own app-only
      token obtained through the OAuth2 client-credentials flow

Every request is bounded by ``timeout_seconds``. Transport failures surface as
``GraphTransportError``; HTTP error statuses surface as ``GraphHTTPError`` with
the status code preserved so callers can classify them.
"""

from __future__ import annotations

import json
import logging
import ssl
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, Optional, Tuple

import certifi

logger = logging.getLogger(__name__)

LOGIN_BASE = "https://login.microsoftonline.com"
GRAPH_DEFAULT_SCOPE = "https://graph.microsoft.com/.default"
_TOKEN_EXPIRY_SKEW_SECONDS = 120

_SSL_CONTEXT = ssl.create_default_context(cafile=certifi.where())


class GraphTransportError(Exception):
    """Network fault or timeout talking to Graph / the token endpoint."""


class GraphHTTPError(Exception):
    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"Graph request failed ({status}): {body[:500]}")
        self.status = status
        self.body = body


def _request(
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    data: Optional[bytes] = None,
    timeout_seconds: float,
) -> Tuple[int, Dict[str, str], Any]:
    """Perform one HTTP call and decode the JSON body (None when empty)."""
    req = urllib.request.Request(url=url, method=method, data=data, headers=headers or {})
    try:
        with urllib.request.urlopen(req, timeout=timeout_seconds, context=_SSL_CONTEXT) as resp:
            raw = resp.read()
            status = resp.status
            resp_headers = {k.lower(): v for k, v in resp.headers.items()}
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace")
        raise GraphHTTPError(exc.code, body) from exc
    except (urllib.error.URLError, TimeoutError, OSError) as exc:
        raise GraphTransportError(f"{method} {url} failed: {exc}") from exc

    if not raw:
        return status, resp_headers, None
    try:
        return status, resp_headers, json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise GraphTransportError(f"{method} {url} returned invalid JSON: {exc}") from exc


class GraphClient:
    """Graph REST calls authorised with a caller-supplied bearer token."""

    def __init__(self, api_base: str, timeout_seconds: float) -> None:
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def _url(self, path: str) -> str:
        return f"{self.api_base}/{path.lstrip('/')}"

    def get(self, path: str, token: str, *, query: Optional[Dict[str, str]] = None) -> Any:
        url = self._url(path)
        if query:
            url = f"{url}?{urllib.parse.urlencode(query)}"
        _, _, body = _request(
            "GET",
            url,
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            timeout_seconds=self.timeout_seconds,
        )
        return body

    def patch(
        self,
        path: str,
        token: str,
        payload: Dict[str, Any],
        *,
        if_match: Optional[str] = None,
    ) -> Any:
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if if_match:
            headers["If-Match"] = if_match
        _, _, body = _request(
            "PATCH",
            self._url(path),
            headers=headers,
            data=json.dumps(payload).encode("utf-8"),
            timeout_seconds=self.timeout_seconds,
        )
        return body


class AppTokenProvider:
    """Client-credentials token for the gateway itself, cached until near expiry.

    Shared by concurrent requests in one execution environment; the lock only
    guards the cached token, never a remote call's outcome.
    """

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        *,
        timeout_seconds: float,
        scope: str = GRAPH_DEFAULT_SCOPE,
        login_base: str = LOGIN_BASE,
    ) -> None:
        self.tenant_id = tenant_id
        self.client_id = client_id
        self._client_secret = client_secret
        self.scope = scope
        self.login_base = login_base.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._token: str = ""
        self._expires_at: float = 0.0
        self._lock = threading.Lock()

    def get_token(self) -> str:
        with self._lock:
            if self._token and time.time() < self._expires_at:
                return self._token

            url = f"{self.login_base}/{self.tenant_id}/oauth2/v2.0/token"
            form = urllib.parse.urlencode(
                {
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self._client_secret,
                    "scope": self.scope,
                }
            ).encode("utf-8")
            _, _, body = _request(
                "POST",
                url,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                data=form,
                timeout_seconds=self.timeout_seconds,
            )
            token = str((body or {}).get("access_token") or "")
            if not token:
                raise GraphTransportError("Token endpoint response did not include access_token")
            expires_in = int((body or {}).get("expires_in") or 0)
            self._token = token
            self._expires_at = time.time() + max(0, expires_in - _TOKEN_EXPIRY_SKEW_SECONDS)
            logger.info("Acquired Graph app token (expires_in=%ss)", expires_in)
            return self._token
