# Services module
from smartplant.services.ingestion_service import IngestionService
from smartplant.services.moderation import ModerationService

__all__ = [
    "IngestionService",
    "ModerationService",
]
