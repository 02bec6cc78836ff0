from fastapi import APIRouter

from app.api.routes.appointment_types import router as appointment_types_router
from app.api.routes.appointments import router as appointments_router
from app.api.routes.auth import router as auth_router
from app.api.routes.availability import router as availability_router
from app.api.routes.bookings import router as bookings_router
from app.api.routes.calendar import router as calendar_router
from app.api.routes.health import router as health_router

api_router = APIRouter()
v1_router = APIRouter(prefix="/v1")

api_router.include_router(health_router)

_feature_routers = (
    auth_router,
    appointment_types_router,
    availability_router,
    bookings_router,
    appointments_router,
    calendar_router,
)

# Unversioned routes used by the current frontend.
for feature_router in _feature_routers:
    api_router.include_router(feature_router)

# Versioned routes for long-term API evolution.
for feature_router in _feature_routers:
    v1_router.include_router(feature_router)
api_router.include_router(v1_router)
