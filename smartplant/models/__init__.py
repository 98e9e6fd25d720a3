# Data models module
from smartplant.models.schemas import (
    ModerationResponse,
    ObservationDetail,
    ObservationPage,
    ScanResponse,
    SubmissionMetadata,
)
from smartplant.models.enums import ConfidenceLevel, ObservationStatus, WorkerState

__all__ = [
    "ModerationResponse",
    "ObservationDetail",
    "ObservationPage",
    "ScanResponse",
    "SubmissionMetadata",
    "ConfidenceLevel",
    "ObservationStatus",
    "WorkerState",
]
