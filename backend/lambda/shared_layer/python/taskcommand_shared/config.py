"""taskcommand_shared.config — Process configuration for the completion gateway.

Everything is read from the environment once, at cold start, and handed to the
gateway constructor. Nothing below is re-read per request.

Environment variables:
    ALLOWED_ORIGINS        default: *
    TASK_STORE_BACKEND     graph | dynamodb (default: graph)
    IDENTITY_BACKEND       graph | cognito (default: graph)
    AZURE_TENANT_ID        app registration used by the Graph task store
    AZURE_CLIENT_ID
    AZURE_CLIENT_SECRET
    GRAPH_API_BASE         default: https://graph.microsoft.com/v1.0
    MANAGER_GROUP          group display name or id granting the manager role
    COGNITO_USER_POOL_ID   e.g. us-east-1_b2D0V3E1k
    COGNITO_CLIENT_ID
    TASKS_TABLE            default: planner-tasks
    DYNAMODB_REGION        default: us-west-2
    HTTP_TIMEOUT_SECONDS   default: 10
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_GRAPH_API_BASE = "https://graph.microsoft.com/v1.0"
DEFAULT_TASKS_TABLE = "planner-tasks"
DEFAULT_DYNAMODB_REGION = "us-west-2"
DEFAULT_HTTP_TIMEOUT_SECONDS = 10.0

_TASK_STORE_BACKENDS = {"graph", "dynamodb"}
_IDENTITY_BACKENDS = {"graph", "cognito"}


class ConfigError(ValueError):
    """Raised when the process configuration cannot produce a working gateway."""


def _first_nonempty_env(env: Mapping[str, str], *names: str) -> str:
    for name in names:
        value = str(env.get(name, "")).strip()
        if value:
            return value
    return ""


def _parse_timeout(raw: str) -> float:
    if not raw:
        return DEFAULT_HTTP_TIMEOUT_SECONDS
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid HTTP_TIMEOUT_SECONDS %r; using default", raw)
        return DEFAULT_HTTP_TIMEOUT_SECONDS
    if value <= 0:
        logger.warning("Non-positive HTTP_TIMEOUT_SECONDS %r; using default", raw)
        return DEFAULT_HTTP_TIMEOUT_SECONDS
    return value


@dataclass(frozen=True)
class GatewayConfig:
    allowed_origin: str = "*"
    task_store_backend: str = "graph"
    identity_backend: str = "graph"
    azure_tenant_id: str = ""
    azure_client_id: str = ""
    azure_client_secret: str = ""
    graph_api_base: str = DEFAULT_GRAPH_API_BASE
    manager_group: str = ""
    cognito_user_pool_id: str = ""
    cognito_client_id: str = ""
    tasks_table: str = DEFAULT_TASKS_TABLE
    dynamodb_region: str = DEFAULT_DYNAMODB_REGION
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "GatewayConfig":
        """Build the configuration from ``os.environ`` (or a supplied mapping)."""
        env = os.environ if env is None else env
        task_store_backend = (_first_nonempty_env(env, "TASK_STORE_BACKEND") or "graph").lower()
        identity_backend = (_first_nonempty_env(env, "IDENTITY_BACKEND") or "graph").lower()
        if task_store_backend not in _TASK_STORE_BACKENDS:
            raise ConfigError(
                f"TASK_STORE_BACKEND must be one of {sorted(_TASK_STORE_BACKENDS)}, got '{task_store_backend}'"
            )
        if identity_backend not in _IDENTITY_BACKENDS:
            raise ConfigError(
                f"IDENTITY_BACKEND must be one of {sorted(_IDENTITY_BACKENDS)}, got '{identity_backend}'"
            )

        return cls(
            allowed_origin=_first_nonempty_env(env, "ALLOWED_ORIGINS", "CORS_ORIGIN") or "*",
            task_store_backend=task_store_backend,
            identity_backend=identity_backend,
            azure_tenant_id=_first_nonempty_env(env, "AZURE_TENANT_ID"),
            azure_client_id=_first_nonempty_env(env, "AZURE_CLIENT_ID"),
            azure_client_secret=_first_nonempty_env(env, "AZURE_CLIENT_SECRET"),
            graph_api_base=(_first_nonempty_env(env, "GRAPH_API_BASE") or DEFAULT_GRAPH_API_BASE).rstrip("/"),
            manager_group=_first_nonempty_env(env, "MANAGER_GROUP"),
            cognito_user_pool_id=_first_nonempty_env(env, "COGNITO_USER_POOL_ID"),
            cognito_client_id=_first_nonempty_env(env, "COGNITO_CLIENT_ID"),
            tasks_table=_first_nonempty_env(env, "TASKS_TABLE") or DEFAULT_TASKS_TABLE,
            dynamodb_region=_first_nonempty_env(env, "DYNAMODB_REGION") or DEFAULT_DYNAMODB_REGION,
            http_timeout_seconds=_parse_timeout(_first_nonempty_env(env, "HTTP_TIMEOUT_SECONDS")),
        )

    def require_graph_app_credentials(self) -> None:
        missing = [
            name
            for name, value in (
                ("AZURE_TENANT_ID", self.azure_tenant_id),
                ("AZURE_CLIENT_ID", self.azure_client_id),
                ("AZURE_CLIENT_SECRET", self.azure_client_secret),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"Graph task store requires {', '.join(missing)}")

    def require_cognito(self) -> None:
        if not self.cognito_user_pool_id:
            raise ConfigError("Cognito identity backend requires COGNITO_USER_POOL_ID")
