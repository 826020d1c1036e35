"""
models.py — Shared data structures for hazard fan-out.

Defines:
    • SubscriberRecord     — directory entry (last location + push token)
    • DeliveryStatus       — per-address outcome
    • DeliveryResult       — one address in one send call
    • DeliveryFailure      — recorded per-address failure
    • BatchStatus          — per-batch outcome
    • BatchOutcome         — one batch after retries
    • FailedDispatchReport — operator-visible record of a dropped batch
    • DispatchReport       — summary of one event's fan-out
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from hazardwatch.spatial.geo_math import Coordinate


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Directory
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SubscriberRecord:
    """
    Durable, addressable identity of a watcher.

    Attributes
    ----------
    subscriber_id : str
        Same namespace as HazardEvent.reporter_id.
    location : Coordinate | None
        Last reported location; may be stale or absent.
    delivery_address : str | None
        Opaque push token; may be absent.
    """
    subscriber_id: str
    location: Optional[Coordinate] = None
    delivery_address: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def is_reachable(self) -> bool:
        """True if the record can take part in fan-out at all."""
        return self.location is not None and bool(self.delivery_address)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscriber_id": self.subscriber_id,
            "location": self.location.to_dict() if self.location else None,
            "has_delivery_address": bool(self.delivery_address),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Delivery
# ═══════════════════════════════════════════════════════════════════════════

class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED    = "failed"


@dataclass(frozen=True)
class DeliveryResult:
    """Transport verdict for one address."""
    address: str
    status: DeliveryStatus
    error: Optional[str] = None
    message_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


@dataclass(frozen=True)
class DeliveryFailure:
    """A per-address failure. Recorded, never aborts sibling deliveries."""
    address: str
    reason: str
    batch_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": _mask(self.address),
            "reason": self.reason,
            "batch_id": self.batch_id,
        }


class BatchStatus(str, Enum):
    DELIVERED = "delivered"   # every address accepted
    PARTIAL   = "partial"     # transport ok, some addresses failed
    DROPPED   = "dropped"     # transport failed after all retries


@dataclass
class BatchOutcome:
    """One batch after retries."""
    batch_id: str
    index: int
    addresses: List[str]
    status: BatchStatus = BatchStatus.DELIVERED
    attempts: int = 0
    delivered: int = 0
    failures: List[DeliveryFailure] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "index": self.index,
            "size": len(self.addresses),
            "status": self.status.value,
            "attempts": self.attempts,
            "delivered": self.delivered,
            "failed": len(self.failures),
            "error": self.error,
        }


@dataclass(frozen=True)
class FailedDispatchReport:
    """A batch dropped after exhausting transport retries."""
    batch_id: str
    event_id: str
    addresses: List[str]
    error: str
    attempts: int
    reported_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "event_id": self.event_id,
            "address_count": len(self.addresses),
            "addresses": [_mask(a) for a in self.addresses],
            "error": self.error,
            "attempts": self.attempts,
            "reported_at": self.reported_at.isoformat(),
        }


@dataclass
class DispatchReport:
    """Summary of one event's fan-out."""
    event_id: str
    skipped_reason: Optional[str] = None
    subscribers_checked: int = 0
    eligible: int = 0
    batches: List[BatchOutcome] = field(default_factory=list)
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None

    @property
    def delivered_count(self) -> int:
        return sum(b.delivered for b in self.batches)

    @property
    def failures(self) -> List[DeliveryFailure]:
        return [f for b in self.batches for f in b.failures]

    @property
    def dropped_batches(self) -> List[BatchOutcome]:
        return [b for b in self.batches if b.status == BatchStatus.DROPPED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "skipped_reason": self.skipped_reason,
            "subscribers_checked": self.subscribers_checked,
            "eligible": self.eligible,
            "batch_count": len(self.batches),
            "delivered": self.delivered_count,
            "failed_addresses": len(self.failures),
            "dropped_batches": len(self.dropped_batches),
            "batches": [b.to_dict() for b in self.batches],
            "started_at": self.started_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
        }


def _mask(address: str) -> str:
    """Push tokens are credentials; only expose a prefix."""
    return address[:12] + "..." if len(address) > 12 else address
