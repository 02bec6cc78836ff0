from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import datetime
from zoneinfo import ZoneInfo

from app.services.booking_models import Appointment, AppointmentType

_PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")


def build_display_fields(
    appointment: Appointment,
    appointment_type: AppointmentType,
    *,
    instructor_name: str,
    timezone: str,
) -> dict[str, str]:
    """Human-readable fields for notification templates, in the booking timezone."""
    zone = ZoneInfo(timezone)
    local_start = appointment.start_time.astimezone(zone)
    local_end = appointment.end_time.astimezone(zone)
    return {
        "student_name": appointment.student_contact.name,
        "student_email": appointment.student_contact.email,
        "appointment_type": appointment_type.title,
        "date": f"{local_start:%A}, {local_start:%B} {local_start.day}, {local_start.year}",
        "time": f"{_format_clock(local_start)} - {_format_clock(local_end)}",
        "duration": f"{appointment_type.duration_minutes} minutes",
        "price": f"${appointment_type.price:,.2f}",
        "instructor_name": instructor_name,
        "status": appointment.status.value,
    }


def substitute_variables(template: str, fields: Mapping[str, str]) -> str:
    # Unknown placeholders stay as written.
    return _PLACEHOLDER_PATTERN.sub(lambda match: fields.get(match.group(1), match.group(0)), template)


def _format_clock(value: datetime) -> str:
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{hour}:{value.minute:02d} {suffix}"
