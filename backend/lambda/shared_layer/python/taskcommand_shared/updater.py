"""taskcommand_shared.updater — Read-then-conditional-write task completion.

Each completion re-reads the task's current version tag and issues exactly one
conditional write guarded by it. A rejected write is reported as a conflict and
never retried here: whoever asked must re-read and decide again.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from taskcommand_shared.errors import (
    GatewayError,
    PreconditionFailedError,
    TaskNotFoundError,
    TaskStoreUnavailableError,
)
from taskcommand_shared.serialization import _emit_structured_log
from taskcommand_shared.task_store import COMPLETION_PERCENTAGE, TaskStore

logger = logging.getLogger(__name__)

__all__ = [
    "COMPLETED_MESSAGE",
    "CompletionResult",
    "ConcurrencyUpdater",
]

COMPLETED_MESSAGE = "Task completed successfully"
_COMPLETE_PATCH = {COMPLETION_PERCENTAGE: 100}


@dataclass(frozen=True)
class CompletionResult:
    task_id: str
    success: bool = True
    message: str = COMPLETED_MESSAGE


class ConcurrencyUpdater:
    def __init__(self, store: TaskStore, clock: Callable[[], float] = time.monotonic) -> None:
        self.store = store
        self._clock = clock

    def complete(self, task_id: str, request_id: Optional[str] = None) -> CompletionResult:
        started = self._clock()

        try:
            record = self.store.get(task_id)
        except TaskNotFoundError as exc:
            raise GatewayError.not_found(f"Task not found: {task_id}") from exc
        except TaskStoreUnavailableError as exc:
            logger.error("task fetch failed for %s: %s", task_id, exc)
            raise GatewayError.dependency("Failed to complete task", str(exc)) from exc

        _emit_structured_log(
            component="complete_task",
            event="task_fetched",
            request_id=request_id,
            task_id=task_id,
            latency_ms=int((self._clock() - started) * 1000),
            extra={"version_tag": record.version_tag, "completion_percentage": record.completion_percentage},
        )

        try:
            self.store.conditional_update(task_id, record.version_tag, dict(_COMPLETE_PATCH))
        except PreconditionFailedError as exc:
            raise GatewayError.conflict(
                "Task was modified concurrently. Please refresh and try again."
            ) from exc
        except TaskNotFoundError as exc:
            raise GatewayError.not_found(f"Task not found: {task_id}") from exc
        except TaskStoreUnavailableError as exc:
            logger.error("task update failed for %s: %s", task_id, exc)
            raise GatewayError.dependency("Failed to complete task", str(exc)) from exc

        _emit_structured_log(
            component="complete_task",
            event="task_updated",
            request_id=request_id,
            task_id=task_id,
            latency_ms=int((self._clock() - started) * 1000),
        )
        return CompletionResult(task_id=task_id)
