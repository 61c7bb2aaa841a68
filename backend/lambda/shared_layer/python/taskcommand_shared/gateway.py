"""taskcommand_shared.gateway — Request pipeline for POST /tasks/{taskId}/complete.

Stages run strictly in order, each only after the previous one succeeded:

    1. preflight / method / taskId validation   (no network)
    2. auth gate                                (identity provider)
    3. concurrency updater                      (task store read + conditional write)
    4. response rendering

This module is the only place that turns outcomes into HTTP responses, and
``handle`` always returns one.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from taskcommand_shared.auth import AuthGate
from taskcommand_shared.aws_clients import _get_ddb
from taskcommand_shared.config import GatewayConfig
from taskcommand_shared.errors import DEPENDENCY, METHOD_NOT_ALLOWED, GatewayError
from taskcommand_shared.graph_client import AppTokenProvider, GraphClient
from taskcommand_shared.http_utils import _header, _path_method, _preflight, _task_id_from_event, render
from taskcommand_shared.identity import CognitoIdentityValidator, GraphIdentityValidator, IdentityValidator
from taskcommand_shared.serialization import _emit_structured_log
from taskcommand_shared.task_store import DynamoTaskStore, GraphPlannerTaskStore, TaskStore
from taskcommand_shared.updater import ConcurrencyUpdater

logger = logging.getLogger(__name__)

__all__ = [
    "CompletionGateway",
    "build_identity",
    "build_task_store",
]

_COMPONENT = "complete_task"


def build_identity(config: GatewayConfig) -> IdentityValidator:
    if config.identity_backend == "cognito":
        config.require_cognito()
        return CognitoIdentityValidator(
            config.cognito_user_pool_id,
            config.cognito_client_id,
            config.manager_group,
            timeout_seconds=config.http_timeout_seconds,
        )
    return GraphIdentityValidator(
        GraphClient(config.graph_api_base, config.http_timeout_seconds),
        config.manager_group,
    )


def build_task_store(config: GatewayConfig) -> TaskStore:
    if config.task_store_backend == "dynamodb":
        return DynamoTaskStore(
            _get_ddb(config.dynamodb_region, config.http_timeout_seconds),
            config.tasks_table,
        )
    config.require_graph_app_credentials()
    tokens = AppTokenProvider(
        config.azure_tenant_id,
        config.azure_client_id,
        config.azure_client_secret,
        timeout_seconds=config.http_timeout_seconds,
    )
    return GraphPlannerTaskStore(GraphClient(config.graph_api_base, config.http_timeout_seconds), tokens)


def _request_id(event: Dict[str, Any], context: Any) -> str:
    rid = getattr(context, "aws_request_id", None)
    if rid:
        return str(rid)
    return str((event.get("requestContext") or {}).get("requestId") or "")


class CompletionGateway:
    """Holds no per-request state; one instance serves concurrent invocations."""

    def __init__(self, auth_gate: AuthGate, updater: ConcurrencyUpdater, allowed_origin: str = "*") -> None:
        self.auth_gate = auth_gate
        self.updater = updater
        self.allowed_origin = allowed_origin

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "CompletionGateway":
        return cls(
            AuthGate(build_identity(config)),
            ConcurrencyUpdater(build_task_store(config)),
            allowed_origin=config.allowed_origin,
        )

    def handle(self, event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
        method, path = _path_method(event)
        if method == "OPTIONS":
            return _preflight(self.allowed_origin)

        request_id = _request_id(event, context)
        started = time.monotonic()
        task_id: Optional[str] = None
        _emit_structured_log(
            component=_COMPONENT,
            event="request_received",
            request_id=request_id,
            extra={"method": method, "path": path},
        )

        try:
            if method != "POST":
                raise GatewayError(METHOD_NOT_ALLOWED, f"Method {method} not allowed. Use POST.")

            task_id = _task_id_from_event(event)
            if not task_id:
                raise GatewayError.validation("Task ID is required")

            self.auth_gate.authorize(_header(event, "authorization"))
            result = self.updater.complete(task_id, request_id=request_id)
        except GatewayError as err:
            _emit_structured_log(
                component=_COMPONENT,
                event="request_failed",
                request_id=request_id,
                task_id=task_id,
                latency_ms=int((time.monotonic() - started) * 1000),
                error_code=err.kind,
                extra={"status": err.http_status},
                level=logging.ERROR if err.http_status >= 500 else logging.WARNING,
            )
            return render(err, self.allowed_origin)
        except Exception as exc:
            logger.exception("unhandled error completing task %s", task_id)
            _emit_structured_log(
                component=_COMPONENT,
                event="request_failed",
                request_id=request_id,
                task_id=task_id,
                latency_ms=int((time.monotonic() - started) * 1000),
                error_code=DEPENDENCY,
                extra={"status": 500},
                level=logging.ERROR,
            )
            return render(GatewayError.dependency("Failed to complete task", str(exc)), self.allowed_origin)

        _emit_structured_log(
            component=_COMPONENT,
            event="request_completed",
            request_id=request_id,
            task_id=task_id,
            latency_ms=int((time.monotonic() - started) * 1000),
            extra={"status": 200},
        )
        return render(result, self.allowed_origin)
