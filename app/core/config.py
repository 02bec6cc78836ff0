from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

ALLOWED_ENV_FIELD_NAMES = frozenset(
    {
        "app_name",
        "app_env",
        "app_version",
        "api_prefix",
        "allowed_origins",
        "frontend_base_url",
        "booking_data_store",
        "user_data_store",
        "mongodb_uri",
        "mongodb_db_name",
        "mongodb_users_collection",
        "mongodb_appointment_types_collection",
        "mongodb_appointments_collection",
        "mongodb_manual_blocks_collection",
        "mongodb_booking_locks_collection",
        "mongodb_calendar_credentials_collection",
        "mongodb_oauth_states_collection",
        "mongodb_connect_timeout_ms",
        "auth_secret_key",
        "auth_token_ttl_minutes",
        "default_admin_email",
        "default_admin_password",
        "default_admin_full_name",
        "google_calendar_client_id",
        "google_calendar_client_secret",
        "google_calendar_redirect_uri",
        "google_calendar_api_timeout_seconds",
        "google_calendar_event_timezone",
        "google_calendar_token_refresh_leeway_seconds",
        "oauth_state_ttl_minutes",
        "booking_timezone",
        "working_hours_start",
        "working_hours_end",
        "slot_step_minutes",
        "availability_lookup_margin_minutes",
        "booking_lock_timeout_seconds",
    },
)


class Settings(BaseSettings):
    app_name: str = "Course Booking API"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    allowed_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    frontend_base_url: str = "http://localhost:3000"
    booking_data_store: str = "mongodb"
    user_data_store: str = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "course_booking"
    mongodb_users_collection: str = "users"
    mongodb_appointment_types_collection: str = "appointment_types"
    mongodb_appointments_collection: str = "appointments"
    mongodb_manual_blocks_collection: str = "manual_blocks"
    mongodb_booking_locks_collection: str = "booking_locks"
    mongodb_calendar_credentials_collection: str = "calendar_credentials"
    mongodb_oauth_states_collection: str = "oauth_states"
    mongodb_connect_timeout_ms: int = 2000
    auth_secret_key: str = "change-me-in-production"
    auth_token_ttl_minutes: int = 60 * 12
    default_admin_email: str = "admin"
    default_admin_password: str = "admin"
    default_admin_full_name: str = "Administrator"
    google_calendar_client_id: str = ""
    google_calendar_client_secret: str = ""
    google_calendar_redirect_uri: str = "http://localhost:8000/api/calendar/google/callback"
    google_calendar_api_timeout_seconds: float = 10.0
    google_calendar_event_timezone: str = "America/Denver"
    google_calendar_token_refresh_leeway_seconds: int = 300
    oauth_state_ttl_minutes: int = 10
    booking_timezone: str = "America/Denver"
    working_hours_start: str = "09:00"
    working_hours_end: str = "17:00"
    slot_step_minutes: int = 0
    availability_lookup_margin_minutes: int = 12 * 60
    booking_lock_timeout_seconds: float = 5.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def _filter_allowed_env_fields(source):
            return {
                field_name: raw_value
                for field_name, raw_value in source().items()
                if field_name in ALLOWED_ENV_FIELD_NAMES
            }

        return (
            init_settings,
            lambda: _filter_allowed_env_fields(env_settings),
            lambda: _filter_allowed_env_fields(dotenv_settings),
            file_secret_settings,
        )

    @property
    def google_calendar_configured(self) -> bool:
        return bool(
            self.google_calendar_client_id.strip()
            and self.google_calendar_client_secret.strip()
            and self.google_calendar_redirect_uri.strip()
        )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("booking_data_store", "user_data_store", mode="before")
    @classmethod
    def normalize_store_name(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("working_hours_start", "working_hours_end", mode="before")
    @classmethod
    def validate_working_hours(cls, value: str) -> str:
        cleaned = value.strip()
        try:
            raw_hours, raw_minutes = cleaned.split(":", maxsplit=1)
            hours = int(raw_hours)
            minutes = int(raw_minutes)
        except ValueError as exc:
            raise ValueError("Working hours must use HH:MM format.") from exc
        if not 0 <= hours < 24 or not 0 <= minutes < 60:
            raise ValueError("Working hours must use HH:MM format.")
        return f"{hours:02d}:{minutes:02d}"

    @field_validator("google_calendar_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_google_calendar_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 10.0
        return parsed_value

    @field_validator("booking_lock_timeout_seconds", mode="before")
    @classmethod
    def normalize_booking_lock_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 5.0
        return parsed_value

    @field_validator("oauth_state_ttl_minutes", mode="before")
    @classmethod
    def normalize_oauth_state_ttl(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 10
        return parsed_value

    @field_validator("slot_step_minutes", "availability_lookup_margin_minutes", mode="before")
    @classmethod
    def normalize_non_negative_minutes(cls, value: int | str) -> int:
        return max(int(value), 0)

    @field_validator("auth_token_ttl_minutes", mode="before")
    @classmethod
    def normalize_auth_token_ttl(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 60 * 12
        return parsed_value


@lru_cache
def get_settings() -> Settings:
    return Settings()
