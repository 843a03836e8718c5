from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request

from tms.schemas import ExecutionWebhook, ShardWebhook, WebhookAck
from tms.services.orchestrator import ContextDep, OrchestrationContext

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def require_webhook_token(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    context: OrchestrationContext = ContextDep,
) -> None:
    client_ip = request.client.host if request.client else None
    context.webhooks.verify_token(authorization, client_ip)


@router.post(
    "/execution-results",
    response_model=WebhookAck,
    dependencies=[Depends(require_webhook_token)],
)
async def execution_results(
    payload: ExecutionWebhook, context: OrchestrationContext = ContextDep
) -> Dict[str, Any]:
    return context.webhooks.on_execution_result(payload.model_dump(mode="json", exclude_none=True))


@router.post(
    "/parallel-execution/{parent_id}",
    response_model=WebhookAck,
    dependencies=[Depends(require_webhook_token)],
)
async def shard_results(
    parent_id: str, payload: ShardWebhook, context: OrchestrationContext = ContextDep
) -> Dict[str, Any]:
    return context.parallel.handle_shard_webhook(parent_id, payload.model_dump(mode="json", exclude_none=True))
