"""taskcommand_shared.http_utils — HTTP response helpers with CORS.

Response envelope and error rendering used by the completion gateway. Every
non-preflight response carries the same CORS header set and a JSON body.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional, Tuple, Union
from urllib.parse import unquote

from taskcommand_shared.errors import DEPENDENCY, GatewayError
from taskcommand_shared.updater import CompletionResult

__all__ = [
    "_cors_headers",
    "_error",
    "_header",
    "_path_method",
    "_preflight",
    "_response",
    "_task_id_from_event",
    "render",
]

logger = logging.getLogger(__name__)

_RE_COMPLETE_PATH = re.compile(r"/tasks/(?P<task_id>[^/]*)/complete/?$")


def _cors_headers(allowed_origin: str = "*") -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": allowed_origin or "*",
        "Access-Control-Allow-Methods": "POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
        "Access-Control-Allow-Credentials": "true",
    }


def _response(status_code: int, body: Any, allowed_origin: str = "*") -> Dict[str, Any]:
    """Build an API Gateway response with CORS headers and a JSON body."""
    return {
        "statusCode": status_code,
        "headers": {
            **_cors_headers(allowed_origin),
            "Content-Type": "application/json",
        },
        "body": json.dumps(body, default=str),
    }


def _preflight(allowed_origin: str = "*") -> Dict[str, Any]:
    return {"statusCode": 204, "headers": _cors_headers(allowed_origin), "body": ""}


def _error(status_code: int, message: str, allowed_origin: str = "*", **extra: Any) -> Dict[str, Any]:
    """Build an error response.

    Args:
        status_code: HTTP status code.
        message: Human-readable error message.
        allowed_origin: Value for Access-Control-Allow-Origin.
        **extra: Additional fields merged into the response payload.
    """
    payload: Dict[str, Any] = {"error": message}
    if extra:
        payload.update(extra)
    return _response(status_code, payload, allowed_origin)


def render(outcome: Union[GatewayError, CompletionResult], allowed_origin: str = "*") -> Dict[str, Any]:
    """Map a gateway outcome onto its HTTP response. Never raises."""
    try:
        if isinstance(outcome, CompletionResult):
            return _response(
                200,
                {"success": outcome.success, "taskId": outcome.task_id, "message": outcome.message},
                allowed_origin,
            )
        if isinstance(outcome, GatewayError):
            if outcome.kind == DEPENDENCY:
                return _response(
                    outcome.http_status,
                    {"error": outcome.message, "message": outcome.detail or outcome.message},
                    allowed_origin,
                )
            return _error(outcome.http_status, outcome.message, allowed_origin)
        logger.error("render received unexpected outcome type: %s", type(outcome).__name__)
    except Exception as exc:
        logger.error("render failed: %s", exc)
    return _response(500, {"error": "Failed to complete task", "message": "Internal error"}, allowed_origin)


def _path_method(event: Dict[str, Any]) -> Tuple[str, str]:
    """Extract HTTP method and path from an API Gateway v2 (or v1) event."""
    rc = event.get("requestContext") or {}
    http = rc.get("http") or {}
    method = (http.get("method") or event.get("httpMethod") or "").upper()
    path = event.get("rawPath") or http.get("path") or event.get("path") or "/"
    return method, path


def _task_id_from_event(event: Dict[str, Any]) -> Optional[str]:
    """Return the stripped taskId path parameter, or None when absent/empty."""
    params = event.get("pathParameters") or {}
    raw = params.get("taskId") if isinstance(params, dict) else None
    if raw is None:
        _, path = _path_method(event)
        m = _RE_COMPLETE_PATH.search(path)
        raw = unquote(m.group("task_id")) if m else None
    if raw is None:
        return None
    task_id = str(raw).strip()
    return task_id or None


def _header(event: Dict[str, Any], name: str) -> Optional[str]:
    """Case-insensitive header lookup (API Gateway v2 lowercases, v1 does not)."""
    headers = event.get("headers") or {}
    wanted = name.lower()
    for key, value in headers.items():
        if str(key).lower() == wanted:
            return value
    return None
