"""
Orchestration endpoints.

POST /api/orchestration            {"id": "..."}            start (or report) one message
POST /api/orchestration            {"message_ids": [...]}   statuses for many messages
GET  /api/orchestration/status/{id}                         status of one message
GET  /api/orchestration/health                              liveness
GET  /api/orchestration/ping                                tenant backend connectivity
GET  /api/orchestration/debug                               processing/processed/status dump
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from relaydesk.agent.orchestrator import Orchestrator, get_orchestrator
from relaydesk.api.deps import require_functional
from relaydesk.schemas import (
    MessageStatusResponse,
    OrchestrationRequest,
    StartResponse,
    StatusListResponse,
)
from relaydesk.services.backend import BackendError
from relaydesk.services.credential_resolver import RequestContext, Resolution

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orchestration", tags=["orchestration"])


@router.post("")
async def orchestrate(
    body: OrchestrationRequest,
    request: Request,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Start processing one message, or read the status of several."""
    if body.id:
        result = orchestrator.start_or_get_status(
            body.id,
            RequestContext.from_request(request),
            force_reprocess=body.force_reprocess,
        )
        return StartResponse(**result.to_dict())

    if body.message_ids is not None:
        return StatusListResponse(statuses=orchestrator.list_statuses(body.message_ids))

    raise HTTPException(status_code=400, detail="Invalid request: provide id or message_ids")


@router.get("/status/{message_id}", response_model=MessageStatusResponse)
async def get_status(message_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.get_status(message_id).to_dict()


@router.get("/health")
async def health():
    return {"status": "ok", "service": "orchestration"}


@router.get("/ping")
async def ping(resolution: Resolution = Depends(require_functional)):
    """Check that the resolved tenant backend answers."""
    try:
        await resolution.backend.count("messages")
    except BackendError as e:
        logger.warning(f"[API] Backend ping failed: {e}")
        raise HTTPException(status_code=503, detail=f"Database connection failed: {e}")
    return {"status": "ok", "database": "connected", **resolution.to_dict()}


@router.get("/debug")
async def debug(orchestrator: Orchestrator = Depends(get_orchestrator)):
    snapshot = orchestrator.tracker.snapshot()
    snapshot["dedup_entries"] = orchestrator.dedup.size()
    return snapshot
