"""
directory.py — Subscriber directory: last-known location + push token.

The directory is eventually-consistent external state, written by the
registration flow and only ever read by fan-out. snapshot() returns
whatever is visible at that instant; no locking is involved.

Backends:
    InMemorySubscriberDirectory  — single process / tests
    RedisSubscriberDirectory     — one hash per subscriber:

        subscriber:<id>  →  { lat, lon, token, updated_at }

Redis layout mirrors the key-value store the mobile app writes to
(users/<id> with lat, lon, fcmToken).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from hazardwatch.alerts.models import SubscriberRecord
from hazardwatch.core.config import settings
from hazardwatch.spatial.geo_math import Coordinate

logger = logging.getLogger(__name__)


class SubscriberDirectory(Protocol):
    async def snapshot(self) -> List[SubscriberRecord]: ...

    async def close(self) -> None: ...


# ═══════════════════════════════════════════════════════════════════════════
# In-memory
# ═══════════════════════════════════════════════════════════════════════════

class InMemorySubscriberDirectory:
    """Process-local directory."""

    def __init__(self, records: Optional[List[SubscriberRecord]] = None):
        self._records: Dict[str, SubscriberRecord] = {}
        for record in records or []:
            self._records[record.subscriber_id] = record

    async def upsert(self, record: SubscriberRecord) -> SubscriberRecord:
        self._records[record.subscriber_id] = record
        return record

    async def remove(self, subscriber_id: str) -> bool:
        return self._records.pop(subscriber_id, None) is not None

    async def get(self, subscriber_id: str) -> Optional[SubscriberRecord]:
        return self._records.get(subscriber_id)

    async def snapshot(self) -> List[SubscriberRecord]:
        return list(self._records.values())

    async def close(self) -> None:
        return None

    def __len__(self) -> int:
        return len(self._records)


# ═══════════════════════════════════════════════════════════════════════════
# Redis
# ═══════════════════════════════════════════════════════════════════════════

class RedisSubscriberDirectory:
    """
    Redis-backed directory.

    Parameters
    ----------
    client : redis.asyncio.Redis, optional
        Pre-built client. Created lazily from ``url`` when omitted.
    """

    def __init__(
        self,
        client=None,
        *,
        url: Optional[str] = None,
        prefix: Optional[str] = None,
    ):
        self._client = client
        self._url = url or settings.REDIS_URL
        self._prefix = prefix or settings.REDIS_SUBSCRIBER_PREFIX

    async def _get_client(self):
        if self._client is None:
            import redis.asyncio as aioredis
            self._client = aioredis.from_url(
                self._url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("Subscriber directory connected: %s", self._url)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _key(self, subscriber_id: str) -> str:
        return f"{self._prefix}{subscriber_id}"

    async def upsert(self, record: SubscriberRecord) -> SubscriberRecord:
        client = await self._get_client()
        updated_at = record.updated_at or datetime.now(timezone.utc)
        mapping = {
            "lat": "" if record.location is None else repr(record.location.latitude),
            "lon": "" if record.location is None else repr(record.location.longitude),
            "token": record.delivery_address or "",
            "updated_at": updated_at.isoformat(),
        }
        await client.hset(self._key(record.subscriber_id), mapping=mapping)
        return SubscriberRecord(
            subscriber_id=record.subscriber_id,
            location=record.location,
            delivery_address=record.delivery_address,
            updated_at=updated_at,
        )

    async def remove(self, subscriber_id: str) -> bool:
        client = await self._get_client()
        return bool(await client.delete(self._key(subscriber_id)))

    async def get(self, subscriber_id: str) -> Optional[SubscriberRecord]:
        client = await self._get_client()
        data = await client.hgetall(self._key(subscriber_id))
        if not data:
            return None
        return self._parse(subscriber_id, data)

    async def snapshot(self) -> List[SubscriberRecord]:
        client = await self._get_client()
        records: List[SubscriberRecord] = []
        async for key in client.scan_iter(match=f"{self._prefix}*"):
            data = await client.hgetall(key)
            if data:
                records.append(self._parse(key[len(self._prefix):], data))
        return records

    @staticmethod
    def _parse(subscriber_id: str, data: Dict[str, str]) -> SubscriberRecord:
        location: Optional[Coordinate] = None
        lat, lon = data.get("lat"), data.get("lon")
        if lat and lon:
            try:
                location = Coordinate(float(lat), float(lon))
            except ValueError as exc:
                # Bad rows are ineligible, not fatal
                logger.warning("Subscriber %s has invalid location: %s", subscriber_id, exc)

        updated_at: Optional[datetime] = None
        if data.get("updated_at"):
            try:
                updated_at = datetime.fromisoformat(data["updated_at"])
            except ValueError:
                logger.warning("Subscriber %s has invalid updated_at", subscriber_id)

        return SubscriberRecord(
            subscriber_id=subscriber_id,
            location=location,
            delivery_address=data.get("token") or None,
            updated_at=updated_at,
        )


def build_directory():
    """Directory selected by DIRECTORY_BACKEND."""
    if settings.DIRECTORY_BACKEND == "redis":
        return RedisSubscriberDirectory()
    return InMemorySubscriberDirectory()
