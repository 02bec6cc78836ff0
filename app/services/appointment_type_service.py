from __future__ import annotations

import logging
from typing import Any

from app.core.config import Settings, get_settings
from app.schemas.auth import CurrentUserResponse
from app.schemas.booking import AppointmentTypeCreateRequest, AppointmentTypeUpdateRequest
from app.services.booking_errors import (
    AppointmentNotFoundError,
    BookingValidationError,
    PermissionDeniedError,
)
from app.services.booking_models import AppointmentType
from app.services.booking_store import BookingStore, create_booking_store

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("duration_minutes", "price", "requires_approval", "is_active")


class AppointmentTypeService:
    def __init__(
        self,
        settings: Settings | None = None,
        store: BookingStore | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store or create_booking_store(self.settings)

    def list_active(self, instructor_id: str) -> list[AppointmentType]:
        return self.store.list_appointment_types(instructor_id, active_only=True)

    def list_owned(self, instructor_id: str) -> list[AppointmentType]:
        return self.store.list_appointment_types(instructor_id)

    def create(
        self,
        instructor: CurrentUserResponse,
        payload: AppointmentTypeCreateRequest,
    ) -> AppointmentType:
        title = payload.title.strip()
        if not title:
            raise BookingValidationError("title must not be empty.")
        appointment_type = self.store.create_appointment_type(
            instructor_id=instructor.id,
            title=title,
            duration_minutes=payload.duration_minutes,
            price=payload.price,
            requires_approval=payload.requires_approval,
            is_active=payload.is_active,
            description=(payload.description or "").strip() or None,
        )
        logger.info(
            "appointment_type_created type_id=%s instructor_id=%s duration_minutes=%s",
            appointment_type.id,
            instructor.id,
            appointment_type.duration_minutes,
        )
        return appointment_type

    def update(
        self,
        actor: CurrentUserResponse,
        appointment_type_id: str,
        payload: AppointmentTypeUpdateRequest,
    ) -> AppointmentType:
        existing = self.store.get_appointment_type(appointment_type_id)
        if not existing:
            raise AppointmentNotFoundError("Appointment type not found.")
        if existing.instructor_id != actor.id and not actor.is_admin:
            raise PermissionDeniedError("You can only edit your own appointment types.")

        updates: dict[str, Any] = payload.model_dump(exclude_unset=True)
        null_fields = [name for name in _REQUIRED_FIELDS if name in updates and updates[name] is None]
        if null_fields:
            raise BookingValidationError(f"{', '.join(null_fields)} cannot be null.")
        if "title" in updates:
            updates["title"] = str(updates["title"] or "").strip()
            if not updates["title"]:
                raise BookingValidationError("title must not be empty.")
        if "description" in updates:
            updates["description"] = (updates["description"] or "").strip() or None
        if not updates:
            return existing

        updated = self.store.update_appointment_type(appointment_type_id, updates)
        if not updated:
            raise AppointmentNotFoundError("Appointment type not found.")
        return updated
