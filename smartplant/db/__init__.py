# Database module
from smartplant.db.models import AIResult, PlantObservation, Species
from smartplant.db.session import build_engine, build_session_factory, init_db

__all__ = [
    "AIResult",
    "PlantObservation",
    "Species",
    "build_engine",
    "build_session_factory",
    "init_db",
]
