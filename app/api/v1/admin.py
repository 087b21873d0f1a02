"""
Admin API Endpoints
===================

Internal endpoints for the operator and the external scheduler. All of
them require the ``X-Service-Key`` header.
"""

import logging

from fastapi import APIRouter, Query

from app.dependencies import DBSession, ServiceKey
from app.services.event_store import EventStore
from app.services.scheduled_jobs import run_iap_resync, run_period_end_sweep

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[ServiceKey])


@router.get("/events/failed")
async def list_failed_events(
    db: DBSession,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    """Events whose facts could not be applied, newest first."""
    events = await EventStore(db).list_failed(limit=limit, offset=offset)
    return {
        "success": True,
        "data": [
            {
                "eventRowId": str(event.event_row_id),
                "provider": event.provider.value,
                "providerEventId": event.provider_event_id,
                "eventType": event.event_type,
                "userId": str(event.user_id) if event.user_id else None,
                "detail": event.detail,
                "receivedAt": event.received_at.isoformat() if event.received_at else None,
                "processedAt": event.processed_at.isoformat() if event.processed_at else None,
            }
            for event in events
        ],
    }


@router.post("/jobs/period-end-sweep")
async def trigger_period_end_sweep(db: DBSession):
    """Expire subscriptions whose entitlement deadline has passed."""
    summary = await run_period_end_sweep(db)
    return {"success": True, "data": summary}


@router.post("/jobs/iap-resync")
async def trigger_iap_resync(db: DBSession):
    """Re-validate stored App Store receipts."""
    summary = await run_iap_resync(db)
    return {"success": True, "data": summary}
