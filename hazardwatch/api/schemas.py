"""
Pydantic schemas for the hazard alert API.

Separated from the route handlers so they are reusable across
the codebase (WebSocket handlers, tests).
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from hazardwatch.spatial.geo_math import Coordinate


class _OptionalLocation(BaseModel):
    """Latitude and longitude are given together or not at all."""
    latitude: Optional[float] = Field(None, ge=-90.0, le=90.0, examples=[10.02])
    longitude: Optional[float] = Field(None, ge=-180.0, le=180.0, examples=[10.0])

    @model_validator(mode="after")
    def _both_or_neither(self):
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be provided together")
        return self

    def to_coordinate(self) -> Optional[Coordinate]:
        if self.latitude is None or self.longitude is None:
            return None
        return Coordinate(self.latitude, self.longitude)


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class HazardReportRequest(_OptionalLocation):
    """A classified hazard report from a device."""
    reporter_id: str = Field(..., min_length=1, examples=["user_3f9a0c1d2e4b5a6c"])
    label: str = Field("unknown", examples=["pothole"])
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0, examples=[0.91])
    source: str = Field("android_app", examples=["android_app"])


class SubscriberUpsertRequest(_OptionalLocation):
    """Registration flow: last known location and push token."""
    delivery_address: Optional[str] = Field(
        None, description="Push token", examples=["fcm-token-abc123"],
    )


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class LocationOut(BaseModel):
    latitude: float
    longitude: float


class HazardEventOut(BaseModel):
    id: str
    reporter_id: str
    location: Optional[LocationOut]
    created_at: int
    created_at_iso: str
    label: str
    source: str
    confidence: Optional[float]


class HazardListResponse(BaseModel):
    count: int
    hazards: List[HazardEventOut]


class SubscriberOut(BaseModel):
    subscriber_id: str
    location: Optional[LocationOut]
    has_delivery_address: bool
    updated_at: Optional[str]
