from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from app.core.config import Settings, get_settings
from app.services.booking_errors import (
    AppointmentNotFoundError,
    BookingValidationError,
    PermissionDeniedError,
)
from app.services.booking_models import (
    AppointmentStatus,
    AppointmentType,
    BusyInterval,
    BusySource,
    ManualBlock,
    TimeSlot,
)
from app.services.booking_store import BookingStore, create_booking_store
from app.services.calendar_credential_store import (
    CalendarCredentialStore,
    create_calendar_credential_store,
)
from app.services.calendar_sync_service import CalendarSyncService, create_calendar_sync_service

logger = logging.getLogger(__name__)


class AvailabilityService:
    def __init__(
        self,
        settings: Settings | None = None,
        store: BookingStore | None = None,
        credential_store: CalendarCredentialStore | None = None,
        clock: Callable[[], datetime] | None = None,
        calendar_sync_factory: Callable[[str], CalendarSyncService | None] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store or create_booking_store(self.settings)
        self.credential_store = credential_store or create_calendar_credential_store(self.settings)
        self.clock = clock or (lambda: datetime.now(UTC))
        self.calendar_sync_factory = calendar_sync_factory or self._default_calendar_sync_factory

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.settings.booking_timezone)

    def working_window(self, day: date) -> tuple[datetime, datetime]:
        local_start = datetime.combine(day, _parse_clock(self.settings.working_hours_start), tzinfo=self.timezone)
        local_end = datetime.combine(day, _parse_clock(self.settings.working_hours_end), tzinfo=self.timezone)
        window_start = local_start.astimezone(UTC)
        window_end = local_end.astimezone(UTC)
        if window_end < window_start:
            window_end = window_start
        return window_start, window_end

    def local_date_of(self, instant: datetime) -> date:
        return instant.astimezone(self.timezone).date()

    def collect_busy_intervals(
        self,
        instructor_id: str,
        start: datetime,
        end: datetime,
        *,
        exclude_appointment_id: str | None = None,
        exclude_external_event_id: str | None = None,
    ) -> list[BusyInterval]:
        intervals: list[BusyInterval] = []
        own_event_ids: set[str] = set()
        if exclude_external_event_id:
            own_event_ids.add(exclude_external_event_id)
        for appointment in self.store.list_appointments_in_range(
            instructor_id,
            start,
            end,
            statuses=AppointmentStatus,
        ):
            if appointment.external_event_id:
                own_event_ids.add(appointment.external_event_id)
            if appointment.id == exclude_appointment_id or not appointment.is_active:
                continue
            intervals.append(
                BusyInterval(
                    start=appointment.start_time,
                    end=appointment.end_time,
                    source=BusySource.appointment,
                    external_event_id=appointment.external_event_id,
                ),
            )

        for block in self.store.list_manual_blocks(instructor_id, start, end):
            intervals.append(
                BusyInterval(start=block.start_time, end=block.end_time, source=BusySource.manual_block),
            )

        sync_service = self.calendar_sync_factory(instructor_id)
        if sync_service and sync_service.blocks_availability:
            for external in sync_service.list_busy_intervals(start, end):
                # Mirrored events count through their appointment, or not at all once it is inactive.
                if external.external_event_id in own_event_ids:
                    continue
                intervals.append(external)
        return intervals

    def free_slots(self, instructor_id: str, day: date, duration_minutes: int) -> list[TimeSlot]:
        if duration_minutes <= 0:
            raise BookingValidationError("duration_minutes must be positive.")

        window_start, window_end = self.working_window(day)
        margin = timedelta(minutes=self.settings.availability_lookup_margin_minutes)
        busy = merge_busy_intervals(
            self.collect_busy_intervals(instructor_id, window_start - margin, window_end + margin),
        )
        step_minutes = self.settings.slot_step_minutes or duration_minutes
        return walk_free_slots(
            window_start=window_start,
            window_end=window_end,
            busy=busy,
            duration=timedelta(minutes=duration_minutes),
            step=timedelta(minutes=step_minutes),
            now=self.clock(),
        )

    def free_slots_for_type(
        self,
        instructor_id: str,
        day: date,
        appointment_type_id: str,
    ) -> tuple[AppointmentType, list[TimeSlot]]:
        appointment_type = self.store.get_appointment_type(appointment_type_id)
        if (
            not appointment_type
            or appointment_type.instructor_id != instructor_id
            or not appointment_type.is_active
        ):
            raise BookingValidationError("Appointment type is not available for this instructor.")
        return appointment_type, self.free_slots(instructor_id, day, appointment_type.duration_minutes)

    def is_within_working_hours(self, start: datetime, end: datetime) -> bool:
        window_start, window_end = self.working_window(self.local_date_of(start))
        return window_start <= start and end <= window_end

    def create_manual_block(
        self,
        instructor_id: str,
        *,
        start_time: datetime,
        end_time: datetime,
        reason: str | None = None,
    ) -> ManualBlock:
        start_time = _require_aware(start_time, "start_time")
        end_time = _require_aware(end_time, "end_time")
        if start_time >= end_time:
            raise BookingValidationError("start_time must be before end_time.")
        if start_time < self.clock():
            raise BookingValidationError("Cannot block time in the past.")
        block = self.store.create_manual_block(
            instructor_id=instructor_id,
            start_time=start_time,
            end_time=end_time,
            reason=(reason or "").strip() or None,
        )
        logger.info(
            "manual_block_created block_id=%s instructor_id=%s start=%s end=%s",
            block.id,
            instructor_id,
            block.start_time.isoformat(),
            block.end_time.isoformat(),
        )
        return block

    def list_manual_blocks(
        self,
        instructor_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ManualBlock]:
        return self.store.list_manual_blocks(instructor_id, start, end)

    def delete_manual_block(self, block_id: str, *, actor_id: str, actor_is_admin: bool = False) -> None:
        block = self.store.get_manual_block(block_id)
        if not block:
            raise AppointmentNotFoundError("Manual block not found.")
        if block.instructor_id != actor_id and not actor_is_admin:
            raise PermissionDeniedError("You can only remove your own blocks.")
        self.store.delete_manual_block(block_id)
        logger.info("manual_block_deleted block_id=%s instructor_id=%s", block_id, block.instructor_id)

    def _default_calendar_sync_factory(self, instructor_id: str) -> CalendarSyncService | None:
        return create_calendar_sync_service(
            instructor_id,
            settings=self.settings,
            credential_store=self.credential_store,
            clock=self.clock,
        )


def merge_busy_intervals(intervals: Iterable[BusyInterval]) -> list[BusyInterval]:
    """Union of overlapping or touching intervals, sorted by start."""
    merged: list[BusyInterval] = []
    for interval in sorted(intervals, key=lambda item: (item.start, item.end)):
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            if interval.end > last.end:
                merged[-1] = BusyInterval(start=last.start, end=interval.end, source=last.source)
            continue
        merged.append(interval)
    return merged


def walk_free_slots(
    *,
    window_start: datetime,
    window_end: datetime,
    busy: list[BusyInterval],
    duration: timedelta,
    step: timedelta,
    now: datetime,
) -> list[TimeSlot]:
    slots: list[TimeSlot] = []
    busy_index = 0
    # Steps needed to clear an emitted slot; keeps every candidate on the step grid.
    steps_per_slot = -(-duration // step)
    slot_start = window_start
    while slot_start + duration <= window_end:
        slot_end = slot_start + duration
        # busy is sorted; intervals ending before this slot can never overlap a later one.
        while busy_index < len(busy) and busy[busy_index].end <= slot_start:
            busy_index += 1
        overlaps = busy_index < len(busy) and busy[busy_index].overlaps(slot_start, slot_end)
        if slot_start >= now and not overlaps:
            slots.append(TimeSlot(start=slot_start, end=slot_end))
            slot_start += step * steps_per_slot
            continue
        slot_start += step
    return slots


def _parse_clock(raw_value: str) -> time:
    raw_hours, raw_minutes = raw_value.split(":", maxsplit=1)
    return time(hour=int(raw_hours), minute=int(raw_minutes))


def _require_aware(value: datetime, field_name: str) -> datetime:
    if value.tzinfo is None:
        raise BookingValidationError(f"{field_name} must include a timezone offset.")
    return value.astimezone(UTC)
