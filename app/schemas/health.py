from datetime import datetime

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str
    version: str
    environment: str
    booking_data_store: str
    google_calendar_configured: bool
    timestamp: datetime
