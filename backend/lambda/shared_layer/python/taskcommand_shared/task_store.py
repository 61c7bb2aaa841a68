"""taskcommand_shared.task_store — Remote task stores with conditional writes.

A store exposes two operations:

    get(task_id) -> RemoteTaskRecord
    conditional_update(task_id, version_tag, patch) -> None

``conditional_update`` must be applied by the store only while the stored
version tag still equals ``version_tag``. Failures are reported as
``TaskNotFoundError``, ``PreconditionFailedError`` or
``TaskStoreUnavailableError``; no backend retries a rejected write.

Backends:
    GraphPlannerTaskStore  Microsoft Graph Planner tasks (``@odata.etag`` + If-Match)
    DynamoTaskStore        DynamoDB items versioned by a numeric ``sync_version``
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Protocol, runtime_checkable
from urllib.parse import quote

from botocore.exceptions import BotoCoreError, ClientError

from taskcommand_shared.errors import PreconditionFailedError, TaskNotFoundError, TaskStoreUnavailableError
from taskcommand_shared.graph_client import AppTokenProvider, GraphClient, GraphHTTPError, GraphTransportError
from taskcommand_shared.serialization import _deserialize, _now_z, _serialize

logger = logging.getLogger(__name__)

__all__ = [
    "COMPLETION_PERCENTAGE",
    "DynamoTaskStore",
    "GraphPlannerTaskStore",
    "RemoteTaskRecord",
    "TaskStore",
]

# Patch field understood by every backend.
COMPLETION_PERCENTAGE = "completion_percentage"


@dataclass(frozen=True)
class RemoteTaskRecord:
    """Read-only snapshot of a task as held by the remote store."""

    task_id: str
    version_tag: str
    completion_percentage: int = 0
    fields: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class TaskStore(Protocol):
    def get(self, task_id: str) -> RemoteTaskRecord:
        """Return the current record, raising TaskNotFoundError when absent."""

    def conditional_update(self, task_id: str, version_tag: str, patch: Mapping[str, Any]) -> None:
        """Apply ``patch`` only if the stored version tag still equals ``version_tag``."""


def _percentage(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


# ---------------------------------------------------------------------------
# Microsoft Graph Planner
# ---------------------------------------------------------------------------

_GRAPH_PATCH_FIELDS = {COMPLETION_PERCENTAGE: "percentComplete"}


class GraphPlannerTaskStore:
    """Planner tasks accessed with the gateway's own application permissions."""

    def __init__(self, client: GraphClient, tokens: AppTokenProvider) -> None:
        self.client = client
        self.tokens = tokens

    def _app_token(self) -> str:
        try:
            return self.tokens.get_token()
        except (GraphHTTPError, GraphTransportError) as exc:
            raise TaskStoreUnavailableError(f"Could not acquire app token: {exc}") from exc

    @staticmethod
    def _path(task_id: str) -> str:
        return f"/planner/tasks/{quote(task_id, safe='')}"

    def get(self, task_id: str) -> RemoteTaskRecord:
        token = self._app_token()
        try:
            task = self.client.get(self._path(task_id), token) or {}
        except GraphHTTPError as exc:
            if exc.status == 404:
                raise TaskNotFoundError(f"Task not found: {task_id}") from exc
            raise TaskStoreUnavailableError(str(exc)) from exc
        except GraphTransportError as exc:
            raise TaskStoreUnavailableError(str(exc)) from exc

        etag = task.get("@odata.etag")
        if not etag:
            raise TaskStoreUnavailableError(f"Task {task_id} response did not include an etag")
        return RemoteTaskRecord(
            task_id=str(task.get("id") or task_id),
            version_tag=str(etag),
            completion_percentage=_percentage(task.get("percentComplete")),
            fields=task,
        )

    def conditional_update(self, task_id: str, version_tag: str, patch: Mapping[str, Any]) -> None:
        body = {_GRAPH_PATCH_FIELDS.get(k, k): v for k, v in patch.items()}
        token = self._app_token()
        try:
            self.client.patch(self._path(task_id), token, body, if_match=version_tag)
        except GraphHTTPError as exc:
            if exc.status == 404:
                raise TaskNotFoundError(f"Task not found: {task_id}") from exc
            if exc.status in (409, 412):
                raise PreconditionFailedError(f"Task {task_id} changed since etag {version_tag}") from exc
            raise TaskStoreUnavailableError(str(exc)) from exc
        except GraphTransportError as exc:
            raise TaskStoreUnavailableError(str(exc)) from exc


# ---------------------------------------------------------------------------
# DynamoDB
# ---------------------------------------------------------------------------

_DDB_PATCH_FIELDS = {COMPLETION_PERCENTAGE: "percent_complete"}


def _is_conditional_check_failed(exc: Exception) -> bool:
    if not isinstance(exc, ClientError):
        return False
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class DynamoTaskStore:
    """Tasks stored as DynamoDB items keyed by ``task_id``.

    The version tag is the item's ``sync_version`` rendered as a string; every
    accepted write increments it.
    """

    def __init__(self, ddb: Any, table_name: str) -> None:
        self.ddb = ddb
        self.table_name = table_name

    @staticmethod
    def _key(task_id: str) -> Dict[str, Any]:
        return {"task_id": _serialize(task_id)}

    def get(self, task_id: str) -> RemoteTaskRecord:
        try:
            resp = self.ddb.get_item(TableName=self.table_name, Key=self._key(task_id), ConsistentRead=True)
        except (BotoCoreError, ClientError) as exc:
            raise TaskStoreUnavailableError(f"get_item failed: {exc}") from exc

        raw = resp.get("Item")
        if not raw:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        item = _deserialize(raw)
        try:
            version = int(item.get("sync_version") or 0)
        except (TypeError, ValueError) as exc:
            raise TaskStoreUnavailableError(
                f"Task {task_id} has a non-numeric sync_version: {item.get('sync_version')!r}"
            ) from exc
        return RemoteTaskRecord(
            task_id=task_id,
            version_tag=str(version),
            completion_percentage=_percentage(item.get("percent_complete")),
            fields=item,
        )

    def conditional_update(self, task_id: str, version_tag: str, patch: Mapping[str, Any]) -> None:
        try:
            expected = int(version_tag)
        except (TypeError, ValueError) as exc:
            raise PreconditionFailedError(f"Version tag {version_tag!r} is not a sync_version") from exc

        names: Dict[str, str] = {}
        values: Dict[str, Any] = {
            ":ts": _serialize(_now_z()),
            ":one": _serialize(1),
            ":zero": _serialize(0),
            ":expected": _serialize(expected),
        }
        assignments = []
        for i, (name, value) in enumerate(patch.items()):
            names[f"#f{i}"] = _DDB_PATCH_FIELDS.get(name, name)
            values[f":v{i}"] = _serialize(value)
            assignments.append(f"#f{i} = :v{i}")
        assignments.append("updated_at = :ts")
        assignments.append("sync_version = if_not_exists(sync_version, :zero) + :one")

        if expected == 0:
            condition = "attribute_exists(task_id) AND (attribute_not_exists(sync_version) OR sync_version = :expected)"
        else:
            condition = "attribute_exists(task_id) AND sync_version = :expected"

        kwargs: Dict[str, Any] = {
            "TableName": self.table_name,
            "Key": self._key(task_id),
            "UpdateExpression": "SET " + ", ".join(assignments),
            "ConditionExpression": condition,
            "ExpressionAttributeValues": values,
            "ReturnValuesOnConditionCheckFailure": "ALL_OLD",
        }
        if names:
            kwargs["ExpressionAttributeNames"] = names

        try:
            self.ddb.update_item(**kwargs)
        except ClientError as exc:
            if _is_conditional_check_failed(exc):
                if not exc.response.get("Item"):
                    raise TaskNotFoundError(f"Task not found: {task_id}") from exc
                raise PreconditionFailedError(
                    f"Task {task_id} changed since sync_version {expected}"
                ) from exc
            raise TaskStoreUnavailableError(f"update_item failed: {exc}") from exc
        except BotoCoreError as exc:
            raise TaskStoreUnavailableError(f"update_item failed: {exc}") from exc
