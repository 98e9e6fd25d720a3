"""
Enumerations for the observation pipeline.

These enums provide type safety and clear documentation of valid values.
"""

from enum import Enum


class ObservationStatus(str, Enum):
    """Moderation status of an observation."""
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        """Verified and rejected observations accept no further transitions."""
        return self is not ObservationStatus.PENDING


class WorkerState(str, Enum):
    """Lifecycle of the supervised classifier subprocess."""
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"
    STOPPED = "stopped"


class ConfidenceLevel(str, Enum):
    """Human-readable confidence levels for the moderation queue."""
    VERY_HIGH = "very_high"      # >= 0.95
    HIGH = "high"                # >= 0.85
    MODERATE = "moderate"        # >= 0.70
    LOW = "low"                  # >= 0.50
    VERY_LOW = "very_low"        # < 0.50

    @classmethod
    def from_score(cls, score: float) -> "ConfidenceLevel":
        """Convert a numeric confidence score to a level."""
        if score >= 0.95:
            return cls.VERY_HIGH
        elif score >= 0.85:
            return cls.HIGH
        elif score >= 0.70:
            return cls.MODERATE
        elif score >= 0.50:
            return cls.LOW
        else:
            return cls.VERY_LOW
