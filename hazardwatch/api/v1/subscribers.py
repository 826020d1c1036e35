"""
FastAPI route: subscriber registration.

    PUT /api/v1/subscribers/{id}  — upsert last location + push token
    GET /api/v1/subscribers       — directory summary
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from hazardwatch.alerts.models import SubscriberRecord
from hazardwatch.api.deps import get_services
from hazardwatch.api.schemas import SubscriberOut, SubscriberUpsertRequest
from hazardwatch.services import Services

router = APIRouter(prefix="/api/v1/subscribers", tags=["subscribers"])


@router.put("/{subscriber_id}", response_model=SubscriberOut, summary="Register or update")
async def upsert_subscriber(
    subscriber_id: str,
    request: SubscriberUpsertRequest,
    services: Services = Depends(get_services),
):
    record = await services.directory.upsert(SubscriberRecord(
        subscriber_id=subscriber_id,
        location=request.to_coordinate(),
        delivery_address=request.delivery_address or None,
        updated_at=datetime.now(timezone.utc),
    ))
    return record.to_dict()


@router.get("", summary="Directory summary")
async def directory_summary(services: Services = Depends(get_services)):
    records = await services.directory.snapshot()
    return {
        "count": len(records),
        "reachable": sum(1 for r in records if r.is_reachable),
    }
