# API routes module
from smartplant.api.routes.health import router as health_router
from smartplant.api.routes.observations import router as observations_router
from smartplant.api.routes.scan import router as scan_router
from smartplant.api.routes.species import router as species_router

__all__ = ["health_router", "observations_router", "scan_router", "species_router"]
