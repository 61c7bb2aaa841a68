"""taskcommand_shared.errors — Gateway error taxonomy and collaborator exceptions.

Collaborators (identity validators, task stores) raise the ``CollaboratorError``
subclasses below. Each gateway stage converts them into a ``GatewayError``
before returning, so nothing crosses a stage boundary unconverted.
"""

from __future__ import annotations

from typing import Dict, Optional

__all__ = [
    "CONFLICT",
    "DEPENDENCY",
    "METHOD_NOT_ALLOWED",
    "NOT_FOUND",
    "UNAUTHENTICATED",
    "UNAUTHORIZED",
    "VALIDATION",
    "CollaboratorError",
    "GatewayError",
    "IdentityUnavailableError",
    "PreconditionFailedError",
    "TaskNotFoundError",
    "TaskStoreUnavailableError",
]

# ---------------------------------------------------------------------------
# Error kinds
# ---------------------------------------------------------------------------

VALIDATION = "validation"
UNAUTHENTICATED = "unauthenticated"
UNAUTHORIZED = "unauthorized"
NOT_FOUND = "not_found"
METHOD_NOT_ALLOWED = "method_not_allowed"
CONFLICT = "conflict"
DEPENDENCY = "dependency"

_STATUS_BY_KIND: Dict[str, int] = {
    VALIDATION: 400,
    UNAUTHENTICATED: 401,
    UNAUTHORIZED: 403,
    NOT_FOUND: 404,
    METHOD_NOT_ALLOWED: 405,
    CONFLICT: 409,
    DEPENDENCY: 500,
}


class GatewayError(Exception):
    """A request failure already classified into the gateway taxonomy.

    ``message`` is the human-facing text rendered as ``error``; ``detail`` carries
    lower-level context and is only rendered for ``dependency`` errors.
    """

    def __init__(self, kind: str, message: str, detail: Optional[str] = None) -> None:
        if kind not in _STATUS_BY_KIND:
            raise ValueError(f"Unknown gateway error kind: {kind}")
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.detail = detail

    @property
    def http_status(self) -> int:
        return _STATUS_BY_KIND[self.kind]

    @classmethod
    def validation(cls, message: str) -> "GatewayError":
        return cls(VALIDATION, message)

    @classmethod
    def unauthenticated(cls, message: str) -> "GatewayError":
        return cls(UNAUTHENTICATED, message)

    @classmethod
    def unauthorized(cls, message: str) -> "GatewayError":
        return cls(UNAUTHORIZED, message)

    @classmethod
    def not_found(cls, message: str) -> "GatewayError":
        return cls(NOT_FOUND, message)

    @classmethod
    def conflict(cls, message: str) -> "GatewayError":
        return cls(CONFLICT, message)

    @classmethod
    def dependency(cls, message: str, detail: Optional[str] = None) -> "GatewayError":
        return cls(DEPENDENCY, message, detail)

    def __repr__(self) -> str:
        return f"GatewayError(kind={self.kind!r}, status={self.http_status}, message={self.message!r})"


# ---------------------------------------------------------------------------
# Collaborator exceptions
# ---------------------------------------------------------------------------


class CollaboratorError(Exception):
    """Base class for failures reported by external collaborators."""


class IdentityUnavailableError(CollaboratorError):
    """The identity provider could not answer (network fault, timeout, 5xx)."""


class TaskNotFoundError(CollaboratorError):
    """The remote store reports that the task does not exist."""


class PreconditionFailedError(CollaboratorError):
    """The remote store rejected a conditional write because the version tag moved."""


class TaskStoreUnavailableError(CollaboratorError):
    """Any other remote store failure (timeout, 5xx, unexpected 4xx, network fault)."""
