"""
FastAPI route: hazard reports.

    POST /api/v1/hazards          — append a classified report
    GET  /api/v1/hazards          — recent reports, newest first
    GET  /api/v1/hazards/{id}     — one report
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from hazardwatch.api.deps import get_services
from hazardwatch.api.schemas import HazardEventOut, HazardListResponse, HazardReportRequest
from hazardwatch.core.errors import NotFoundError
from hazardwatch.feed.models import NewHazard
from hazardwatch.services import Services

router = APIRouter(prefix="/api/v1/hazards", tags=["hazards"])


@router.post(
    "",
    status_code=201,
    response_model=HazardEventOut,
    summary="Report a hazard",
    description=(
        "Appends a classified hazard to the shared feed. Nearby watchers "
        "and push subscribers are alerted asynchronously."
    ),
)
async def report_hazard(
    request: HazardReportRequest,
    services: Services = Depends(get_services),
):
    event = await services.feed.append(NewHazard(
        reporter_id=request.reporter_id,
        location=request.to_coordinate(),
        label=request.label,
        source=request.source,
        confidence=request.confidence,
    ))
    return event.to_dict()


@router.get("", response_model=HazardListResponse, summary="Recent hazards")
async def list_hazards(
    limit: int = Query(50, ge=1, le=500),
    services: Services = Depends(get_services),
):
    hazards = [e.to_dict() for e in services.feed.recent(limit)]
    return {"count": len(hazards), "hazards": hazards}


@router.get("/{event_id}", response_model=HazardEventOut, summary="Get one hazard")
async def get_hazard(event_id: str, services: Services = Depends(get_services)):
    event = services.feed.get(event_id)
    if event is None:
        raise NotFoundError("Hazard", id=event_id)
    return event.to_dict()
