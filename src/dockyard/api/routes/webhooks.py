"""Inbound webhook routes.

Bodies are read raw: signatures cover the exact bytes that were sent.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status

from dockyard.api.deps import get_orchestrator
from dockyard.api.routes.common import trigger_response
from dockyard.api.schemas.deploy import TriggerResponse
from dockyard.core.errors import VerificationFailed
from dockyard.core.orchestrator import DeploymentOrchestrator
from dockyard.models.webhook import WebhookEvent, WebhookProvider

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

BUILD_STATUS_EVENT = "build_status"


@router.post("/source/{project_id}", response_model=TriggerResponse)
async def source_webhook(
    project_id: str,
    request: Request,
    response: Response,
    x_github_event: str | None = Header(default=None),
    x_hub_signature_256: str | None = Header(default=None),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> TriggerResponse:
    event = WebhookEvent(
        provider=WebhookProvider.SOURCE_CONTROL,
        event_type=x_github_event or "",
        project_id=project_id,
        raw_payload=await request.body(),
        signature=x_hub_signature_256,
    )
    try:
        outcome = await orchestrator.handle_source_webhook(event)
    except VerificationFailed as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature"
        ) from exc
    return trigger_response(outcome, response)


@router.post("/build/{project_id}", response_model=TriggerResponse)
async def build_webhook(
    project_id: str,
    request: Request,
    response: Response,
    x_dockyard_signature: str | None = Header(default=None),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> TriggerResponse:
    event = WebhookEvent(
        provider=WebhookProvider.BUILD_SYSTEM,
        event_type=BUILD_STATUS_EVENT,
        project_id=project_id,
        raw_payload=await request.body(),
        signature=x_dockyard_signature,
    )
    try:
        outcome = await orchestrator.handle_build_report(event)
    except VerificationFailed as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature"
        ) from exc
    return trigger_response(outcome, response)
