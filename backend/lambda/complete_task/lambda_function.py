"""complete_task/lambda_function.py — Mark a Planner task complete (manager only).

Routes (via API Gateway):
  POST    /api/tasks/{taskId}/complete   — complete task (Authorization: Bearer <token>)
  OPTIONS /api/tasks/{taskId}/complete   — CORS preflight

Auth:
  Bearer token validated by the configured identity backend (Graph or Cognito);
  the caller must also hold the manager role (MANAGER_GROUP).

The task is read for its current version tag and then written once with that
tag as a precondition. A concurrent change yields 409; nothing is retried.

Environment variables: see taskcommand_shared.config.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from taskcommand_shared.config import GatewayConfig
from taskcommand_shared.errors import GatewayError
from taskcommand_shared.gateway import CompletionGateway
from taskcommand_shared.http_utils import _path_method, _preflight, render

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())

# ---------------------------------------------------------------------------
# Gateway (built once per execution environment)
# ---------------------------------------------------------------------------

_config: Optional[GatewayConfig] = None
_gateway: Optional[CompletionGateway] = None
_FALLBACK_ORIGIN = os.environ.get("ALLOWED_ORIGINS", "").strip() or "*"


def _get_gateway() -> CompletionGateway:
    global _config, _gateway
    if _gateway is None:
        _config = GatewayConfig.from_env()
        _gateway = CompletionGateway.from_config(_config)
        logger.info(
            "gateway initialised (task_store=%s, identity=%s)",
            _config.task_store_backend,
            _config.identity_backend,
        )
    return _gateway


def lambda_handler(event: Dict, context: Any) -> Dict:
    try:
        gateway = _get_gateway()
    except Exception as exc:
        logger.error("gateway initialisation failed: %s", exc)
        method, _ = _path_method(event)
        if method == "OPTIONS":
            return _preflight(_FALLBACK_ORIGIN)
        return render(GatewayError.dependency("Failed to complete task", "Service is misconfigured"), _FALLBACK_ORIGIN)
    return gateway.handle(event, context)
