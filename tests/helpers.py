"""Test doubles and helpers shared across the suite."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from hazardwatch.alerts.models import DeliveryResult, DeliveryStatus
from hazardwatch.core.errors import BatchTransportFailure


class FakeClock:
    """Settable millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 1) -> None:
        self.now += ms


class ScriptedSender:
    """
    NotificationSender double.

    fail_when(addresses) → True raises BatchTransportFailure for that call.
    Addresses in ``reject`` come back as per-address failures.
    """

    def __init__(self, fail_when=None, reject=(), delay: float = 0.0):
        self.fail_when = fail_when or (lambda addresses: False)
        self.reject = set(reject)
        self.delay = delay
        self.calls: List[List[str]] = []
        self.payloads: List[Dict[str, Any]] = []

    async def send(self, addresses, title, body, *, data: Optional[Dict[str, Any]] = None):
        self.calls.append(list(addresses))
        self.payloads.append({"title": title, "body": body, "data": data})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_when(addresses):
            raise BatchTransportFailure("connection reset", provider="scripted")
        return [
            DeliveryResult(a, DeliveryStatus.FAILED, error="not-registered")
            if a in self.reject else
            DeliveryResult(a, DeliveryStatus.DELIVERED, message_id=f"m-{a}")
            for a in addresses
        ]


async def settle(rounds: int = 20) -> None:
    """Let queued tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def no_sleep(_seconds: float) -> None:
    return None
