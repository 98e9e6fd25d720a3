"""
Inference Gateway

Issues one classification request per observation through the worker
supervisor and turns the raw worker answer into normalized, ranked
candidates plus the auto-flag verdict.

Confidence handling:
- every confidence (primary and per-candidate) is clamped to [0, 1]
- missing, non-numeric and non-finite values count as 0
- auto_flagged = primary_confidence < threshold (equality is not flagged)
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Protocol

from smartplant.core.config import DEFAULT_UNSURE_THRESHOLD
from smartplant.core.exceptions import ValidationError, WorkerUnavailable

logger = logging.getLogger(__name__)


class ClassifierChannel(Protocol):
    """Anything that can answer a worker request (the supervisor, or a test double)."""

    async def call(self, request: dict[str, Any]) -> dict[str, Any]: ...


def _clamp_unit(value: Any, fallback: float) -> float:
    if isinstance(value, bool) or value is None:
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number):
        return fallback
    return max(0.0, min(1.0, number))


def normalize_confidence(value: Any) -> float:
    """Clamp a worker confidence to [0, 1]; unusable values become 0."""
    return _clamp_unit(value, 0.0)


def effective_threshold(value: Any) -> float:
    """Clamp an operator threshold to [0, 1]; unusable values fall back to the default."""
    return _clamp_unit(value, DEFAULT_UNSURE_THRESHOLD)


def is_auto_flagged(confidence: float, threshold: float) -> bool:
    """An observation needs human review when its best confidence is below threshold."""
    return confidence < threshold


@dataclass(frozen=True)
class Candidate:
    """One ranked classifier guess."""
    name: str
    confidence: float


@dataclass
class ClassificationOutcome:
    """Normalized classifier answer for one image."""
    primary_name: str
    primary_confidence: float
    candidates: list[Candidate] = field(default_factory=list)
    auto_flagged: bool = False
    threshold: float = DEFAULT_UNSURE_THRESHOLD


def _clean(name: Any) -> str:
    return str(name).strip() if name is not None else ""


def parse_candidates(response: dict[str, Any]) -> list[Candidate]:
    """
    Build the ranked candidate list from a worker response.

    Falls back to a single candidate from ``species_name``/``confidence``
    when the worker sends no ``topk`` array. Entries without a usable name
    are skipped; the rest are ordered by descending confidence.
    """
    topk = response.get("topk")
    if not isinstance(topk, list):
        topk = [{"name": response.get("species_name"), "confidence": response.get("confidence")}]

    candidates = []
    for entry in topk:
        if not isinstance(entry, dict):
            continue
        name = _clean(entry.get("name") or entry.get("species_name"))
        if not name:
            continue
        candidates.append(Candidate(name=name, confidence=normalize_confidence(entry.get("confidence"))))

    # sorted() is stable, so ties keep the worker's order
    return sorted(candidates, key=lambda c: c.confidence, reverse=True)


class InferenceGateway:
    """
    Classification entry point used by the ingestion service.

    Usage:
        gateway = InferenceGateway(supervisor, threshold=0.6)
        outcome = await gateway.classify("/abs/path/leaf.jpg", top_k=5)
        if outcome.auto_flagged:
            ...
    """

    def __init__(self, channel: ClassifierChannel, threshold: Any = DEFAULT_UNSURE_THRESHOLD):
        self.channel = channel
        self.threshold = effective_threshold(threshold)

    async def classify(self, image_path: str, top_k: int) -> ClassificationOutcome:
        """
        Classify one stored image.

        Raises:
            ValidationError: top_k is not a positive integer or image_path is empty
            WorkerUnavailable: the worker is down, timed out, or answered
                without any usable prediction
        """
        if isinstance(top_k, bool) or not isinstance(top_k, int) or top_k < 1:
            raise ValidationError(f"top_k must be a positive integer, got {top_k!r}")
        if not image_path:
            raise ValidationError("image_path is required")

        response = await self.channel.call({"image": image_path, "topk": top_k})
        logger.debug(f"[pyworker JSON] {response}")

        candidates = parse_candidates(response)
        primary_name = _clean(response.get("species_name"))
        if not primary_name and candidates:
            primary_name = candidates[0].name
        if not primary_name:
            error = response.get("error")
            raise WorkerUnavailable(
                "Classifier worker returned no prediction"
                + (f": {error}" if error else ""),
                details={"response": response},
            )

        if "confidence" in response:
            primary_confidence = normalize_confidence(response.get("confidence"))
        elif candidates:
            primary_confidence = candidates[0].confidence
        else:
            primary_confidence = 0.0

        return ClassificationOutcome(
            primary_name=primary_name,
            primary_confidence=primary_confidence,
            candidates=candidates,
            auto_flagged=is_auto_flagged(primary_confidence, self.threshold),
            threshold=self.threshold,
        )
