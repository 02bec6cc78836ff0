from datetime import UTC, datetime

from app.core.config import Settings
from app.schemas.health import HealthResponse


class HealthService:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def get_status(self) -> HealthResponse:
        # Half-filled OAuth credentials leave calendar connect unusable.
        partial_calendar_config = not self.settings.google_calendar_configured and bool(
            self.settings.google_calendar_client_id.strip() or self.settings.google_calendar_client_secret.strip()
        )
        return HealthResponse(
            status="degraded" if partial_calendar_config else "ok",
            service=self.settings.app_name,
            version=self.settings.app_version,
            environment=self.settings.app_env,
            booking_data_store=self.settings.booking_data_store,
            google_calendar_configured=self.settings.google_calendar_configured,
            timestamp=datetime.now(UTC),
        )
