from __future__ import annotations

from fastapi import HTTPException, Request

from hazardwatch.services import Services


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=500, detail="Services not configured")
    return services
