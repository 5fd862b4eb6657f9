"""
FastAPI route: Notification delivery pipeline (enqueue + operator surface).

Provides endpoints to:
    POST /api/v1/notifications/enqueue                      — queue one notification
    GET  /api/v1/notifications/channels                     — channels with health
    GET  /api/v1/notifications/channels/definitions         — config schemas by category
    GET  /api/v1/notifications/channels/{type}              — one channel, config masked
    PUT  /api/v1/notifications/channels/{type}/config       — validate + store config
    POST /api/v1/notifications/channels/{type}/enable       — enable
    POST /api/v1/notifications/channels/{type}/disable      — disable
    POST /api/v1/notifications/channels/{type}/test         — send a test message
    GET  /api/v1/notifications/queue/stats                  — queue counters
    GET  /api/v1/notifications/queue                        — list entries
    GET  /api/v1/notifications/queue/{id}                   — one entry
    POST /api/v1/notifications/queue/requeue                — requeue dead letters
    POST /api/v1/notifications/queue/process                — run one worker pass now
    GET  /api/v1/notifications/history                      — paginated attempt log
    GET  /api/v1/notifications/history/summary              — delivery / error rates
    GET  /api/v1/notifications/policy                       — effective delivery policy
    POST /api/v1/notifications/policy/reload                — re-read the settings table
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from backend.app.core.errors import ChannelSendError, NotFoundError
from backend.app.notifications.models import (
    DeliveryState,
    FieldKind,
    HistoryStatus,
    utcnow,
)
from backend.app.notifications.pipeline import NotificationPipeline
from backend.app.notifications.queue import DEFAULT_PRIORITY
from backend.app.notifications.registry import definitions_by_category, get_definition

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])

MASK = "********"


def get_pipeline(request: Request) -> NotificationPipeline:
    """Dependency: the pipeline built in the application lifespan."""
    pipeline = getattr(request.app.state, "notification_pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Notification pipeline not started.")
    return pipeline


# ---------------------------------------------------------------------------
# Request / Response Schemas
# ---------------------------------------------------------------------------

class EnqueueRequest(BaseModel):
    """One notification for one channel."""
    user_id: Optional[int] = Field(None, description="Recipient user, if any", examples=[7])
    channel_type: str = Field(..., min_length=1, examples=["email"])
    subject: str = Field("", examples=["Severe thunderstorm warning"])
    body: str = Field(..., min_length=1, examples=["Storms expected after 16:00 local time."])
    priority: int = Field(DEFAULT_PRIORITY, ge=0, description="Higher is sent first", examples=[8])
    variables: Dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form values; 'recipient' is used when no user address exists",
        examples=[{"recipient": "ops@example.com"}],
    )
    template_id: Optional[int] = Field(None)


class EnqueueResponse(BaseModel):
    id: int
    state: str
    max_retries: int


class ChannelConfigRequest(BaseModel):
    config: Dict[str, Any] = Field(..., examples=[{"host": "smtp.example.com", "port": 587}])


class ChannelTestRequest(BaseModel):
    recipient: str = Field("", description="Address / chat id / user key for the test message")


class RequeueRequest(BaseModel):
    ids: List[int] = Field(..., min_length=1, examples=[[12, 15]])


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------

def _masked_config(channel_type: str, config: Dict[str, Any]) -> Dict[str, Any]:
    """Hide password-kind values."""
    definition = get_definition(channel_type)
    if definition is None:
        return dict(config)
    masked = dict(config)
    for f in definition.config_fields:
        if f.kind == FieldKind.PASSWORD and masked.get(f.key):
            masked[f.key] = MASK
    return masked


def _merge_masked(current: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    """A field sent back as MASK keeps its stored value."""
    merged = dict(incoming)
    for key, value in incoming.items():
        if value == MASK and key in current:
            merged[key] = current[key]
    return merged


def _parse_state(value: Optional[str]) -> Optional[DeliveryState]:
    if value is None:
        return None
    try:
        return DeliveryState(value)
    except ValueError:
        valid = [s.value for s in DeliveryState]
        raise HTTPException(status_code=400, detail=f"Invalid state '{value}'. Must be one of: {valid}")


def _parse_status(value: Optional[str]) -> Optional[HistoryStatus]:
    if value is None:
        return None
    try:
        return HistoryStatus(value)
    except ValueError:
        valid = [s.value for s in HistoryStatus]
        raise HTTPException(status_code=400, detail=f"Invalid status '{value}'. Must be one of: {valid}")


# ---------------------------------------------------------------------------
# Enqueue
# ---------------------------------------------------------------------------

@router.post(
    "/enqueue",
    response_model=EnqueueResponse,
    status_code=201,
    summary="Queue a notification",
    description=(
        "Stores the notification in state 'created'. Channel and recipient are "
        "resolved when the worker picks it up, so unconfigured channels are accepted."
    ),
)
async def enqueue(request: EnqueueRequest, pipeline: NotificationPipeline = Depends(get_pipeline)):
    entry_id = await pipeline.enqueue(
        request.user_id,
        request.channel_type,
        request.subject,
        request.body,
        request.priority,
        request.variables,
        template_id=request.template_id,
    )
    return EnqueueResponse(id=entry_id, state=DeliveryState.CREATED.value, max_retries=pipeline.policy.max_retries)


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------

@router.get("/channels", summary="List channels with health")
async def list_channels(pipeline: NotificationPipeline = Depends(get_pipeline)):
    channels = await pipeline.manager.list_channels()
    return {
        "channels": [c.to_dict() for c in channels],
        "implemented": pipeline.registry.types(),
        "enabled": [c.channel_type for c in channels if c.dispatchable],
    }


@router.get(
    "/channels/definitions",
    summary="Channel configuration schemas",
    description="Catalog entries grouped by category; drives the configuration form.",
)
async def list_definitions(category: Optional[str] = Query(None, examples=["messaging"])):
    grouped = definitions_by_category(category)
    return {
        "categories": {
            name: [d.to_dict() for d in definitions]
            for name, definitions in grouped.items()
        },
    }


@router.get("/channels/{channel_type}", summary="One channel with health and config")
async def get_channel(channel_type: str, pipeline: NotificationPipeline = Depends(get_pipeline)):
    stats = await pipeline.manager.stats(channel_type)
    config = await pipeline.manager.get_config(channel_type)
    definition = get_definition(channel_type)
    return {
        **stats.to_dict(),
        "definition": definition.to_dict() if definition else None,
        "config": _masked_config(channel_type, config),
    }


@router.put("/channels/{channel_type}/config", summary="Validate and store channel config")
async def update_channel_config(
    channel_type: str,
    request: ChannelConfigRequest,
    pipeline: NotificationPipeline = Depends(get_pipeline),
):
    current = await pipeline.manager.get_config(channel_type)
    cleaned = await pipeline.manager.update_config(channel_type, _merge_masked(current, request.config))
    return {"channel_type": channel_type, "config": _masked_config(channel_type, cleaned)}


@router.post("/channels/{channel_type}/enable", summary="Enable a channel")
async def enable_channel(channel_type: str, pipeline: NotificationPipeline = Depends(get_pipeline)):
    await pipeline.manager.enable(channel_type)
    return (await pipeline.manager.stats(channel_type)).to_dict()


@router.post("/channels/{channel_type}/disable", summary="Disable a channel")
async def disable_channel(channel_type: str, pipeline: NotificationPipeline = Depends(get_pipeline)):
    await pipeline.manager.disable(channel_type)
    return (await pipeline.manager.stats(channel_type)).to_dict()


@router.post(
    "/channels/{channel_type}/test",
    summary="Send a test message",
    description="On success the channel is enabled and its failure count cleared.",
)
async def test_channel(
    channel_type: str,
    request: ChannelTestRequest,
    pipeline: NotificationPipeline = Depends(get_pipeline),
):
    error: Optional[str] = None
    try:
        await pipeline.manager.test(channel_type, request.recipient)
    except ChannelSendError as exc:
        error = exc.message
    stats = await pipeline.manager.stats(channel_type)
    return {"success": error is None, "error": error, "channel": stats.to_dict()}


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

@router.get("/queue/stats", summary="Queue counters")
async def queue_stats(pipeline: NotificationPipeline = Depends(get_pipeline)):
    stats = await pipeline.queue_stats()
    return {**stats.to_dict(), "in_flight": pipeline.worker.in_flight}


@router.get("/queue", summary="List queue entries (newest first)")
async def list_queue(
    state: Optional[str] = Query(None, examples=["dead_letter"]),
    channel: Optional[str] = Query(None, examples=["email"]),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    pipeline: NotificationPipeline = Depends(get_pipeline),
):
    entries = await pipeline.queue.list_entries(_parse_state(state), channel, limit, offset)
    return {"items": [e.to_dict() for e in entries], "limit": limit, "offset": offset}


@router.get("/queue/{entry_id}", summary="One queue entry")
async def get_queue_entry(entry_id: int, pipeline: NotificationPipeline = Depends(get_pipeline)):
    entry = await pipeline.queue.get(entry_id)
    if entry is None:
        raise NotFoundError("queue entry", id=entry_id)
    return entry.to_dict()


@router.post(
    "/queue/requeue",
    summary="Requeue dead-letter entries",
    description="Only entries still in 'dead_letter' move; repeating the call is a no-op.",
)
async def requeue(request: RequeueRequest, pipeline: NotificationPipeline = Depends(get_pipeline)):
    count = await pipeline.requeue_dead_letters(request.ids)
    return {"requested": len(set(request.ids)), "requeued": count}


@router.post("/queue/process", summary="Run one worker pass now")
async def process_now(pipeline: NotificationPipeline = Depends(get_pipeline)):
    claimed = await pipeline.process_queue()
    return {"claimed": claimed, "in_flight": pipeline.worker.in_flight}


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

@router.get("/history", summary="Delivery attempt log")
async def history(
    channel: Optional[str] = Query(None, examples=["slack"]),
    status: Optional[str] = Query(None, examples=["failed"]),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    pipeline: NotificationPipeline = Depends(get_pipeline),
):
    page = await pipeline.history(channel, _parse_status(status), limit, offset)
    return page.to_dict()


@router.get("/history/summary", summary="Delivery and error rates")
async def history_summary(
    hours: Optional[int] = Query(None, ge=1, le=24 * 365, description="Window; all time when omitted"),
    pipeline: NotificationPipeline = Depends(get_pipeline),
):
    since = utcnow() - timedelta(hours=hours) if hours else None
    summary = await pipeline.history_summary(since)
    summary["recent_errors"] = [i.to_dict() for i in await pipeline.history_log.recent_errors(10)]
    return summary


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

@router.get("/policy", summary="Effective delivery policy")
async def get_policy(pipeline: NotificationPipeline = Depends(get_pipeline)):
    return pipeline.policy.to_dict()


@router.post("/policy/reload", summary="Reload policy from the settings table")
async def reload_policy(pipeline: NotificationPipeline = Depends(get_pipeline)):
    policy = await pipeline.reload_policy()
    return policy.to_dict()
