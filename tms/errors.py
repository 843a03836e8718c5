"""Typed error hierarchy for the orchestration service.

Every error carries a machine-readable ``code`` alongside the human message and
the HTTP status the API layer should answer with. Stack traces are logged by the
application exception handlers and never leak into a response body.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class OrchestrationError(Exception):
    """Base class for all orchestration failures."""

    code = "ORCHESTRATION_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Body returned to callers; context stays in the logs."""
        return {"code": self.code, "message": self.message}


class ValidationError(OrchestrationError):
    """Malformed submission or patch. Never retried automatically."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(OrchestrationError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, kind: str, item_id: str) -> None:
        super().__init__(
            f"{kind} '{item_id}' not found",
            context={"kind": kind, "id": item_id},
        )
        self.kind = kind
        self.item_id = item_id


class InvalidStateError(OrchestrationError):
    code = "INVALID_STATE"
    status_code = 400


class WebhookAuthError(OrchestrationError):
    code = "WEBHOOK_AUTH_FAILED"
    status_code = 401


class StorageError(OrchestrationError):
    """Persistent store stayed unavailable after the bounded retry budget."""

    code = "STORAGE_UNAVAILABLE"
    status_code = 500
