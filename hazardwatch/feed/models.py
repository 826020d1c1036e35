"""
models.py — Data structures carried by the hazard feed.

    NewHazard           — what a reporter submits (no id, no timestamp yet)
    HazardEvent         — an appended, immutable report
    AppendNotification  — change-stream message wrapping one appended event

`created_at` is assigned by the store, in milliseconds since the epoch, and
never decreases in append order. Watermark filtering depends on that.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from hazardwatch.spatial.geo_math import Coordinate


DEFAULT_SOURCE = "android_app"


@dataclass(frozen=True)
class NewHazard:
    """A hazard report before the store has accepted it."""
    reporter_id: str
    location: Optional[Coordinate]
    label: str = "unknown"
    source: str = DEFAULT_SOURCE
    confidence: Optional[float] = None


@dataclass(frozen=True)
class HazardEvent:
    """
    An appended hazard report. Immutable.

    Attributes
    ----------
    id : str
        Store-assigned, unique.
    reporter_id : str
        Device/user identity of the reporter (same namespace as watcher ids).
    location : Coordinate | None
        Events without a location are kept but never matched.
    created_at : int
        Store-assigned epoch milliseconds.
    label : str
        Classifier output, e.g. "pothole" / "speedbump". Not used in matching.
    """
    id: str
    reporter_id: str
    location: Optional[Coordinate]
    created_at: int
    label: str = "unknown"
    source: str = DEFAULT_SOURCE
    confidence: Optional[float] = None

    @property
    def has_location(self) -> bool:
        return self.location is not None

    @property
    def created_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.created_at / 1000.0, tz=timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "reporter_id": self.reporter_id,
            "location": self.location.to_dict() if self.location else None,
            "created_at": self.created_at,
            "created_at_iso": self.created_at_datetime.isoformat(),
            "label": self.label,
            "source": self.source,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class AppendNotification:
    """One change-stream delivery. May arrive more than once per event."""
    event: HazardEvent

    @property
    def event_id(self) -> str:
        return self.event.id
