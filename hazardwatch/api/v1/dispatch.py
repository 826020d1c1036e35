"""
FastAPI route: fan-out reports for operators.

    GET /api/v1/dispatch/reports             — recent per-event reports
    GET /api/v1/dispatch/reports/{event_id}  — one event's report
    GET /api/v1/dispatch/failures            — dropped batches
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from hazardwatch.api.deps import get_services
from hazardwatch.core.errors import NotFoundError
from hazardwatch.services import Services

router = APIRouter(prefix="/api/v1/dispatch", tags=["dispatch"])


@router.get("/reports", summary="Recent fan-out reports")
async def list_reports(
    limit: int = Query(50, ge=1, le=500),
    services: Services = Depends(get_services),
):
    reports = services.report_store.recent_reports(limit)
    return {"count": len(reports), "reports": [r.to_dict() for r in reports]}


@router.get("/reports/{event_id}", summary="Fan-out report for one hazard")
async def get_report(event_id: str, services: Services = Depends(get_services)):
    report = services.report_store.get(event_id)
    if report is None:
        raise NotFoundError("Dispatch report", event_id=event_id)
    return report.to_dict()


@router.get("/failures", summary="Dropped batches")
async def list_failures(
    limit: int = Query(50, ge=1, le=500),
    services: Services = Depends(get_services),
):
    failures = services.report_store.failed_dispatches(limit)
    return {
        "count": len(failures),
        "total": services.report_store.total_failures,
        "failures": [f.to_dict() for f in failures],
    }
