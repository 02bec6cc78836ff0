from fastapi import APIRouter, Depends

from app.core.config import Settings, get_settings
from app.schemas.health import HealthResponse
from app.services.health_service import HealthService

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def booking_healthcheck(settings: Settings = Depends(get_settings)) -> HealthResponse:
    return HealthService(settings).get_status()
