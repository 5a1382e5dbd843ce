"""
Webhook trigger endpoint.

- POST /webhooks/trigger/{token} - Run a scheduled import by its webhook token

Unknown tokens and disabled webhooks both answer 404.
"""

from __future__ import annotations

from fastapi import APIRouter, Path

from timetiles.api.deps import DbSession
from timetiles.api.v1.scheduled_imports import trigger_response
from timetiles.schemas.scheduled_import import TriggerResponse
from timetiles.services.scheduler_service import ScheduledImportService

router = APIRouter()


@router.post("/trigger/{token}", response_model=TriggerResponse)
async def trigger_webhook(
    db: DbSession,
    token: str = Path(..., min_length=16, max_length=64, description="Webhook token"),
):
    """Trigger a scheduled import. A running schedule is not started twice."""
    result = await ScheduledImportService(db).trigger_webhook(token)
    return trigger_response(result)
