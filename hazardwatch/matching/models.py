"""
models.py — Watcher session and alert structures.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from hazardwatch.spatial.geo_math import Coordinate, format_distance


class SessionState(str, Enum):
    """Unsubscribed → Subscribed → Unsubscribed."""
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBED   = "subscribed"


@dataclass(frozen=True)
class Watcher:
    """
    One listening client.

    Attributes
    ----------
    watcher_id : str
        Same namespace as HazardEvent.reporter_id.
    location : Coordinate | None
        A watcher with no location matches nothing.
    watermark : int
        Feed time (epoch ms) at which listening began. Events created
        before it are never alerted on.
    radius_km : float
        Alerting radius.
    """
    watcher_id: str
    location: Optional[Coordinate]
    watermark: int
    radius_km: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "watcher_id": self.watcher_id,
            "location": self.location.to_dict() if self.location else None,
            "watermark": self.watermark,
            "radius_km": self.radius_km,
        }


@dataclass(frozen=True)
class Alert:
    """A local alert raised for one (event, watcher) pair."""
    event_id: str
    watcher_id: str
    distance_km: float
    label: str
    created_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "alert",
            "event_id": self.event_id,
            "watcher_id": self.watcher_id,
            "distance_km": round(self.distance_km, 4),
            "distance_text": format_distance(self.distance_km),
            "label": self.label,
            "created_at": self.created_at,
        }
