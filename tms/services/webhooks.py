from __future__ import annotations

import logging
import secrets
from typing import Any, Dict, Optional

from tms.errors import NotFoundError, ValidationError, WebhookAuthError
from tms.schemas import TERMINAL_STATUSES, WebhookStatus
from tms.services.executions import ExecutionQueueManager

LOGGER = logging.getLogger("tms.webhooks")


class WebhookResultIngestor:
    """Single asynchronous entry point for runner progress and results.

    Redelivery is safe: a webhook for an execution that already reached a
    terminal status is acknowledged without changing anything.
    """

    def __init__(self, executions: ExecutionQueueManager, *, token: Optional[str] = None) -> None:
        self._executions = executions
        self._token = token or None

    @property
    def auth_enabled(self) -> bool:
        return self._token is not None

    def verify_token(self, authorization: Optional[str], client_ip: Optional[str] = None) -> None:
        if self._token is None:
            LOGGER.debug("Accepting unauthenticated webhook from %s; token checks are disabled", client_ip)
            return
        scheme, _, value = (authorization or "").partition(" ")
        presented = value.strip().encode("utf-8")
        if scheme.lower() != "bearer" or not secrets.compare_digest(presented, self._token.encode("utf-8")):
            LOGGER.warning("Rejected webhook from %s: missing or invalid bearer token", client_ip or "unknown")
            raise WebhookAuthError(
                "Missing or invalid webhook bearer token.", context={"client_ip": client_ip}
            )

    def on_execution_result(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        execution_id = payload.get("execution_id")
        status = getattr(payload.get("status"), "value", payload.get("status"))
        if not execution_id or not status:
            raise ValidationError("Webhook requires 'executionId' and 'status'.")
        try:
            record = self._executions.get_status(execution_id)
        except NotFoundError:
            LOGGER.warning("Webhook for unknown execution %s (status=%s)", execution_id, status)
            raise

        if record.get("status") in TERMINAL_STATUSES:
            LOGGER.info(
                "Ignoring %s webhook for execution %s; already %s", status, execution_id, record.get("status")
            )
            return {"execution_id": execution_id, "status": record.get("status"), "changed": False}

        results = payload.get("results")
        error_message = payload.get("error_message")
        if status == WebhookStatus.running.value:
            record, changed = self._executions.mark_running(execution_id)
        elif status == WebhookStatus.completed.value:
            record, changed = self._executions.mark_completed(execution_id, results)
        elif status == WebhookStatus.failed.value:
            record, changed = self._executions.mark_failed(execution_id, error_message, results)
        else:
            raise ValidationError(f"Unsupported webhook status '{status}'.")
        return {"execution_id": execution_id, "status": record.get("status"), "changed": changed}
