"""
push_gateway.py — Push notification transport.

Delivery mechanism:
    • One call carries up to max_batch_size device tokens (multicast)
    • The provider answers per token: accepted, or rejected with a reason
      (unregistered token, invalid token, ...)
    • Network / provider outages fail the whole call

In production this sits on a multicast push provider (e.g. FCM
sendMulticast, 500 tokens per call). This module provides the transport
contract plus a simulation for development / testing that logs each
batch and returns per-token results.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Protocol

from hazardwatch.alerts.models import DeliveryResult, DeliveryStatus
from hazardwatch.core.errors import BatchTransportFailure

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    """Push transport contract."""

    async def send(
        self,
        addresses: List[str],
        title: str,
        body: str,
        *,
        data: Optional[Dict[str, Any]] = None,
    ) -> List[DeliveryResult]:
        """
        Deliver one notification to every address.

        Raises
        ------
        BatchTransportFailure
            The call as a whole failed; no per-address verdicts.
        """
        ...


class SimulatedPushSender:
    """
    Logs notifications instead of sending them.

    Parameters
    ----------
    failing_addresses : iterable of str
        Tokens the simulated provider rejects as unregistered.
    transport_failures : int
        The next N calls raise BatchTransportFailure.
    latency_seconds : float
        Simulated round-trip time.
    max_batch_size : int
        Provider limit on tokens per call.
    """

    PROVIDER = "simulated"

    def __init__(
        self,
        *,
        failing_addresses: Iterable[str] = (),
        transport_failures: int = 0,
        latency_seconds: float = 0.0,
        max_batch_size: int = 500,
    ):
        self.failing_addresses = set(failing_addresses)
        self.transport_failures = transport_failures
        self.latency_seconds = latency_seconds
        self.max_batch_size = max_batch_size
        self.calls: List[List[str]] = []

    async def send(
        self,
        addresses: List[str],
        title: str,
        body: str,
        *,
        data: Optional[Dict[str, Any]] = None,
    ) -> List[DeliveryResult]:
        self.calls.append(list(addresses))

        if len(addresses) > self.max_batch_size:
            raise BatchTransportFailure(
                f"{len(addresses)} recipients exceeds limit of {self.max_batch_size}",
                provider=self.PROVIDER,
            )
        if self.transport_failures > 0:
            self.transport_failures -= 1
            raise BatchTransportFailure("provider unavailable", provider=self.PROVIDER)

        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        results: List[DeliveryResult] = []
        for address in addresses:
            if not address or address in self.failing_addresses:
                results.append(DeliveryResult(
                    address=address,
                    status=DeliveryStatus.FAILED,
                    error="registration-token-not-registered",
                ))
            else:
                results.append(DeliveryResult(
                    address=address,
                    status=DeliveryStatus.DELIVERED,
                    message_id=uuid.uuid4().hex[:16],
                ))

        logger.info(
            "[PUSH] %s → %d recipient(s): %s",
            (data or {}).get("event_id", "-"), len(addresses), title,
            extra={"recipient_count": len(addresses)},
        )
        return results
