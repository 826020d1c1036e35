"""
reporting.py — Capture → classify → append.

The image classifier runs on the device and is an external collaborator;
this module only consumes it as classify(image) → Classification.

Every classification is reported as a hazard. There is no minimum
confidence gate; the confidence travels with the event for later review.

HazardReporter is the library entry point for on-device capture. The
HTTP API does not go through it: POST /api/v1/hazards accepts reports
the device has already classified and appends them to the feed directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from hazardwatch.core.errors import ValidationError
from hazardwatch.feed.hazard_feed import HazardFeed
from hazardwatch.feed.models import DEFAULT_SOURCE, HazardEvent, NewHazard
from hazardwatch.spatial.geo_math import Coordinate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Classification:
    """Classifier output."""
    label: str
    confidence: float


class Classifier(Protocol):
    def classify(self, image: Any) -> Classification: ...


class HazardReporter:
    """Turns a captured image plus the device location into a feed event."""

    def __init__(self, classifier: Classifier, feed: HazardFeed, *, source: str = DEFAULT_SOURCE):
        self._classifier = classifier
        self._feed = feed
        self._source = source

    async def report(
        self,
        reporter_id: str,
        image: Any,
        location: Optional[Coordinate],
    ) -> HazardEvent:
        if image is None:
            raise ValidationError("No image to classify", field="image")
        if location is None:
            raise ValidationError(
                "Cannot report a hazard without a location fix",
                field="location",
            )

        result = self._classifier.classify(image)
        logger.info(
            "Classified report from %s as %s (confidence=%.2f)",
            reporter_id, result.label, result.confidence,
        )

        return await self._feed.append(NewHazard(
            reporter_id=reporter_id,
            location=location,
            label=result.label,
            source=self._source,
            confidence=result.confidence,
        ))
