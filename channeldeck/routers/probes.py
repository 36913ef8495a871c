"""
Channel connectivity test endpoints (admin).
"""
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from channeldeck.errors import NotFoundError, ValidationError
from channeldeck.routers.deps import require_admin_key
from channeldeck.services.tester import BatchTestOrchestrator, get_orchestrator

router = APIRouter(
    prefix="/api/v1/test",
    tags=["testing"],
    dependencies=[Depends(require_admin_key)],
)


class SingleTestRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    channel_id: Optional[str] = None


class CatalogTestRequest(BaseModel):
    limit: int = Field(50, ge=1, le=1000)
    skip: int = Field(0, ge=0)


@router.post("/test-channel")
async def test_channel(
    request: SingleTestRequest,
    orchestrator: BatchTestOrchestrator = Depends(get_orchestrator),
):
    """
    Test a single channel and store the outcome on it.
    """
    if not request.channel_id:
        raise ValidationError("channelId is required")

    channel = await orchestrator.store.find_by_id(request.channel_id)
    if channel is None:
        raise NotFoundError("Channel not found")

    result = await orchestrator.run_single(channel.channel_id)
    return {
        "success": True,
        "channel": {
            "id": channel.channel_id,
            "name": channel.channel_name,
            "url": channel.channel_url,
        },
        "working": result.working,
        "statusCode": result.status_code,
        "responseTime": result.response_time_ms,
        "message": result.message,
        "errorReason": result.error_reason,
        "contentType": result.content_type,
    }


@router.post("/test-batch")
async def test_batch(
    payload: dict[str, Any] = Body(...),
    deadline: Optional[float] = Query(None, gt=0, description="Stop dispatching after this many seconds"),
    orchestrator: BatchTestOrchestrator = Depends(get_orchestrator),
):
    """
    Test a list of channels: {"channelIds": [...]}.
    Returns 409 while another test run holds the lock.
    """
    channel_ids = payload.get("channelIds")
    if not isinstance(channel_ids, list) or not all(isinstance(cid, str) for cid in channel_ids):
        raise ValidationError("channelIds array is required")

    summary = await orchestrator.run_batch(channel_ids, deadline=deadline)
    return summary.to_client()


@router.post("/test-all")
async def test_all(
    request: Optional[CatalogTestRequest] = None,
    orchestrator: BatchTestOrchestrator = Depends(get_orchestrator),
):
    """
    Test one page of the whole catalog.
    """
    request = request or CatalogTestRequest()
    summary = await orchestrator.run_catalog(limit=request.limit, skip=request.skip)
    return summary.to_client()


@router.get("/test-status")
async def test_status(orchestrator: BatchTestOrchestrator = Depends(get_orchestrator)):
    """
    Whether a test run currently holds the lock.
    """
    return {"isLocked": await orchestrator.is_locked()}


@router.post("/cancel")
async def cancel_test(orchestrator: BatchTestOrchestrator = Depends(get_orchestrator)):
    """
    Stop the running batch after its in-flight probes finish.
    """
    return {"success": True, "cancelled": orchestrator.cancel()}


@router.delete("/lock")
async def clear_lock(orchestrator: BatchTestOrchestrator = Depends(get_orchestrator)):
    """
    Force-clear a lock left behind by a crashed run.
    """
    return {"success": True, "cleared": await orchestrator.lock.force_clear()}
