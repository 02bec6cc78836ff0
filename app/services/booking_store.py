from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any
from uuid import uuid4

from app.core.config import Settings
from app.services.booking_models import (
    Appointment,
    AppointmentStatus,
    AppointmentType,
    ManualBlock,
    StudentContact,
)

_LOCK_LEASE_SECONDS = 30
_LOCK_POLL_SECONDS = 0.05


class BookingLease:
    """Handle on a held instructor lock."""

    def confirm(self) -> bool:
        """Return ``False`` once the lock has been lost to another holder."""
        return True


class _MongoBookingLease(BookingLease):
    def __init__(self, locks: Any, instructor_id: str, owner: str) -> None:
        self._locks = locks
        self._instructor_id = instructor_id
        self._owner = owner

    def confirm(self) -> bool:
        now = datetime.now(UTC)
        # Renewal and the stale-lease delete in instructor_lock are both single-document
        # operations, so whichever runs first wins.
        record = self._locks.find_one_and_update(
            {"_id": self._instructor_id, "owner": self._owner},
            {"$set": {"expires_at": now + timedelta(seconds=_LOCK_LEASE_SECONDS)}},
        )
        return record is not None


class BookingStore(ABC):
    @abstractmethod
    def create_appointment_type(
        self,
        *,
        instructor_id: str,
        title: str,
        duration_minutes: int,
        price: float,
        requires_approval: bool,
        is_active: bool = True,
        description: str | None = None,
    ) -> AppointmentType:
        raise NotImplementedError

    @abstractmethod
    def get_appointment_type(self, appointment_type_id: str) -> AppointmentType | None:
        raise NotImplementedError

    @abstractmethod
    def list_appointment_types(
        self,
        instructor_id: str,
        *,
        active_only: bool = False,
    ) -> list[AppointmentType]:
        raise NotImplementedError

    @abstractmethod
    def update_appointment_type(
        self,
        appointment_type_id: str,
        updates: Mapping[str, Any],
    ) -> AppointmentType | None:
        raise NotImplementedError

    @abstractmethod
    def create_appointment(
        self,
        *,
        instructor_id: str,
        student_id: str,
        appointment_type_id: str,
        start_time: datetime,
        end_time: datetime,
        status: AppointmentStatus,
        student_contact: StudentContact,
    ) -> Appointment:
        raise NotImplementedError

    @abstractmethod
    def get_appointment(self, appointment_id: str) -> Appointment | None:
        raise NotImplementedError

    @abstractmethod
    def list_appointments(
        self,
        *,
        instructor_id: str | None = None,
        student_id: str | None = None,
        statuses: Iterable[AppointmentStatus] | None = None,
    ) -> list[Appointment]:
        raise NotImplementedError

    @abstractmethod
    def list_appointments_in_range(
        self,
        instructor_id: str,
        start: datetime,
        end: datetime,
        *,
        statuses: Iterable[AppointmentStatus],
    ) -> list[Appointment]:
        raise NotImplementedError

    @abstractmethod
    def update_appointment(
        self,
        appointment_id: str,
        updates: Mapping[str, Any],
        *,
        expected_status: AppointmentStatus | None = None,
    ) -> Appointment | None:
        """Apply ``updates`` and return the stored appointment.

        Returns ``None`` when the appointment does not exist or its status no
        longer matches ``expected_status``.
        """
        raise NotImplementedError

    @abstractmethod
    def create_manual_block(
        self,
        *,
        instructor_id: str,
        start_time: datetime,
        end_time: datetime,
        reason: str | None,
    ) -> ManualBlock:
        raise NotImplementedError

    @abstractmethod
    def get_manual_block(self, block_id: str) -> ManualBlock | None:
        raise NotImplementedError

    @abstractmethod
    def list_manual_blocks(
        self,
        instructor_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ManualBlock]:
        raise NotImplementedError

    @abstractmethod
    def delete_manual_block(self, block_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def instructor_lock(
        self,
        instructor_id: str,
        *,
        timeout_seconds: float,
    ) -> Iterator[BookingLease]:
        """Context manager serializing booking writes for one instructor.

        Raises ``TimeoutError`` when the lock cannot be acquired in time. The
        yielded lease must be confirmed right before the guarded write.
        """
        raise NotImplementedError


class InMemoryBookingStore(BookingStore):
    def __init__(self) -> None:
        self._next_id = 1
        self._data_lock = threading.RLock()
        self._appointment_types: dict[str, dict[str, Any]] = {}
        self._appointments: dict[str, dict[str, Any]] = {}
        self._manual_blocks: dict[str, dict[str, Any]] = {}
        self._instructor_locks: dict[str, threading.Lock] = {}
        self._instructor_locks_guard = threading.Lock()

    def create_appointment_type(
        self,
        *,
        instructor_id: str,
        title: str,
        duration_minutes: int,
        price: float,
        requires_approval: bool,
        is_active: bool = True,
        description: str | None = None,
    ) -> AppointmentType:
        now = datetime.now(UTC)
        with self._data_lock:
            record = {
                "_id": self._allocate_id("type"),
                "instructor_id": instructor_id,
                "title": title.strip(),
                "duration_minutes": duration_minutes,
                "price": price,
                "requires_approval": requires_approval,
                "is_active": is_active,
                "description": description,
                "created_at": now,
                "updated_at": now,
            }
            self._appointment_types[record["_id"]] = record
            return AppointmentType.from_record(record)

    def get_appointment_type(self, appointment_type_id: str) -> AppointmentType | None:
        with self._data_lock:
            record = self._appointment_types.get(appointment_type_id)
            return AppointmentType.from_record(record) if record else None

    def list_appointment_types(
        self,
        instructor_id: str,
        *,
        active_only: bool = False,
    ) -> list[AppointmentType]:
        with self._data_lock:
            records = [
                record
                for record in self._appointment_types.values()
                if record["instructor_id"] == instructor_id
                and (record["is_active"] or not active_only)
            ]
        records.sort(key=lambda record: (record["title"].lower(), record["_id"]))
        return [AppointmentType.from_record(record) for record in records]

    def update_appointment_type(
        self,
        appointment_type_id: str,
        updates: Mapping[str, Any],
    ) -> AppointmentType | None:
        with self._data_lock:
            record = self._appointment_types.get(appointment_type_id)
            if not record:
                return None
            record.update(dict(updates))
            record["updated_at"] = datetime.now(UTC)
            return AppointmentType.from_record(record)

    def create_appointment(
        self,
        *,
        instructor_id: str,
        student_id: str,
        appointment_type_id: str,
        start_time: datetime,
        end_time: datetime,
        status: AppointmentStatus,
        student_contact: StudentContact,
    ) -> Appointment:
        now = datetime.now(UTC)
        with self._data_lock:
            record = {
                "_id": self._allocate_id("appt"),
                "instructor_id": instructor_id,
                "student_id": student_id,
                "appointment_type_id": appointment_type_id,
                "start_time": start_time,
                "end_time": end_time,
                "status": status.value,
                "student_contact": student_contact.to_dict(),
                "external_event_id": None,
                "status_reason": None,
                "created_at": now,
                "updated_at": now,
            }
            self._appointments[record["_id"]] = record
            return Appointment.from_record(record)

    def get_appointment(self, appointment_id: str) -> Appointment | None:
        with self._data_lock:
            record = self._appointments.get(appointment_id)
            return Appointment.from_record(record) if record else None

    def list_appointments(
        self,
        *,
        instructor_id: str | None = None,
        student_id: str | None = None,
        statuses: Iterable[AppointmentStatus] | None = None,
    ) -> list[Appointment]:
        status_values = _status_values(statuses)
        with self._data_lock:
            records = [
                dict(record)
                for record in self._appointments.values()
                if (instructor_id is None or record["instructor_id"] == instructor_id)
                and (student_id is None or record["student_id"] == student_id)
                and (status_values is None or record["status"] in status_values)
            ]
        records.sort(key=lambda record: record["start_time"])
        return [Appointment.from_record(record) for record in records]

    def list_appointments_in_range(
        self,
        instructor_id: str,
        start: datetime,
        end: datetime,
        *,
        statuses: Iterable[AppointmentStatus],
    ) -> list[Appointment]:
        status_values = _status_values(statuses) or set()
        with self._data_lock:
            records = [
                dict(record)
                for record in self._appointments.values()
                if record["instructor_id"] == instructor_id
                and record["status"] in status_values
                and record["start_time"] < end
                and record["end_time"] > start
            ]
        records.sort(key=lambda record: record["start_time"])
        return [Appointment.from_record(record) for record in records]

    def update_appointment(
        self,
        appointment_id: str,
        updates: Mapping[str, Any],
        *,
        expected_status: AppointmentStatus | None = None,
    ) -> Appointment | None:
        with self._data_lock:
            record = self._appointments.get(appointment_id)
            if not record:
                return None
            if expected_status is not None and record["status"] != expected_status.value:
                return None
            record.update(_serialize_appointment_updates(updates))
            record["updated_at"] = datetime.now(UTC)
            return Appointment.from_record(record)

    def create_manual_block(
        self,
        *,
        instructor_id: str,
        start_time: datetime,
        end_time: datetime,
        reason: str | None,
    ) -> ManualBlock:
        with self._data_lock:
            record = {
                "_id": self._allocate_id("block"),
                "instructor_id": instructor_id,
                "start_time": start_time,
                "end_time": end_time,
                "reason": reason,
                "created_at": datetime.now(UTC),
            }
            self._manual_blocks[record["_id"]] = record
            return ManualBlock.from_record(record)

    def get_manual_block(self, block_id: str) -> ManualBlock | None:
        with self._data_lock:
            record = self._manual_blocks.get(block_id)
            return ManualBlock.from_record(record) if record else None

    def list_manual_blocks(
        self,
        instructor_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ManualBlock]:
        with self._data_lock:
            records = [
                dict(record)
                for record in self._manual_blocks.values()
                if record["instructor_id"] == instructor_id
                and (end is None or record["start_time"] < end)
                and (start is None or record["end_time"] > start)
            ]
        records.sort(key=lambda record: record["start_time"])
        return [ManualBlock.from_record(record) for record in records]

    def delete_manual_block(self, block_id: str) -> bool:
        with self._data_lock:
            return self._manual_blocks.pop(block_id, None) is not None

    @contextmanager
    def instructor_lock(
        self,
        instructor_id: str,
        *,
        timeout_seconds: float,
    ) -> Iterator[BookingLease]:
        with self._instructor_locks_guard:
            lock = self._instructor_locks.setdefault(instructor_id, threading.Lock())
        if not lock.acquire(timeout=timeout_seconds):
            raise TimeoutError(f"Booking lock for instructor {instructor_id} is busy.")
        try:
            yield BookingLease()
        finally:
            lock.release()

    def _allocate_id(self, prefix: str) -> str:
        allocated = f"{prefix}-{self._next_id}"
        self._next_id += 1
        return allocated


class MongoBookingStore(BookingStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        appointment_types_collection_name: str,
        appointments_collection_name: str,
        manual_blocks_collection_name: str,
        booking_locks_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import ASCENDING, MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        database = self._client[db_name]
        self._appointment_types = database[appointment_types_collection_name]
        self._appointments = database[appointments_collection_name]
        self._manual_blocks = database[manual_blocks_collection_name]
        self._locks = database[booking_locks_collection_name]

        self._appointment_types.create_index([("instructor_id", ASCENDING), ("is_active", ASCENDING)])
        self._appointments.create_index(
            [("instructor_id", ASCENDING), ("status", ASCENDING), ("start_time", ASCENDING)],
        )
        self._appointments.create_index([("student_id", ASCENDING), ("start_time", ASCENDING)])
        self._manual_blocks.create_index([("instructor_id", ASCENDING), ("start_time", ASCENDING)])
        self._locks.create_index("expires_at", expireAfterSeconds=0)

    def create_appointment_type(
        self,
        *,
        instructor_id: str,
        title: str,
        duration_minutes: int,
        price: float,
        requires_approval: bool,
        is_active: bool = True,
        description: str | None = None,
    ) -> AppointmentType:
        now = datetime.now(UTC)
        payload = {
            "instructor_id": instructor_id,
            "title": title.strip(),
            "duration_minutes": duration_minutes,
            "price": price,
            "requires_approval": requires_approval,
            "is_active": is_active,
            "description": description,
            "created_at": now,
            "updated_at": now,
        }
        insert_result = self._appointment_types.insert_one(payload)
        payload["_id"] = insert_result.inserted_id
        return AppointmentType.from_record(payload)

    def get_appointment_type(self, appointment_type_id: str) -> AppointmentType | None:
        object_id = _to_object_id(appointment_type_id)
        if object_id is None:
            return None
        record = self._appointment_types.find_one({"_id": object_id})
        return AppointmentType.from_record(record) if record else None

    def list_appointment_types(
        self,
        instructor_id: str,
        *,
        active_only: bool = False,
    ) -> list[AppointmentType]:
        query: dict[str, Any] = {"instructor_id": instructor_id}
        if active_only:
            query["is_active"] = True
        cursor = self._appointment_types.find(query).sort("title", 1)
        return [AppointmentType.from_record(record) for record in cursor]

    def update_appointment_type(
        self,
        appointment_type_id: str,
        updates: Mapping[str, Any],
    ) -> AppointmentType | None:
        from pymongo import ReturnDocument

        object_id = _to_object_id(appointment_type_id)
        if object_id is None:
            return None
        record = self._appointment_types.find_one_and_update(
            {"_id": object_id},
            {"$set": {**dict(updates), "updated_at": datetime.now(UTC)}},
            return_document=ReturnDocument.AFTER,
        )
        return AppointmentType.from_record(record) if record else None

    def create_appointment(
        self,
        *,
        instructor_id: str,
        student_id: str,
        appointment_type_id: str,
        start_time: datetime,
        end_time: datetime,
        status: AppointmentStatus,
        student_contact: StudentContact,
    ) -> Appointment:
        now = datetime.now(UTC)
        payload = {
            "instructor_id": instructor_id,
            "student_id": student_id,
            "appointment_type_id": appointment_type_id,
            "start_time": start_time,
            "end_time": end_time,
            "status": status.value,
            "student_contact": student_contact.to_dict(),
            "external_event_id": None,
            "status_reason": None,
            "created_at": now,
            "updated_at": now,
        }
        insert_result = self._appointments.insert_one(payload)
        payload["_id"] = insert_result.inserted_id
        return Appointment.from_record(payload)

    def get_appointment(self, appointment_id: str) -> Appointment | None:
        object_id = _to_object_id(appointment_id)
        if object_id is None:
            return None
        record = self._appointments.find_one({"_id": object_id})
        return Appointment.from_record(record) if record else None

    def list_appointments(
        self,
        *,
        instructor_id: str | None = None,
        student_id: str | None = None,
        statuses: Iterable[AppointmentStatus] | None = None,
    ) -> list[Appointment]:
        query: dict[str, Any] = {}
        if instructor_id is not None:
            query["instructor_id"] = instructor_id
        if student_id is not None:
            query["student_id"] = student_id
        status_values = _status_values(statuses)
        if status_values is not None:
            query["status"] = {"$in": sorted(status_values)}
        cursor = self._appointments.find(query).sort("start_time", 1)
        return [Appointment.from_record(record) for record in cursor]

    def list_appointments_in_range(
        self,
        instructor_id: str,
        start: datetime,
        end: datetime,
        *,
        statuses: Iterable[AppointmentStatus],
    ) -> list[Appointment]:
        cursor = self._appointments.find(
            {
                "instructor_id": instructor_id,
                "status": {"$in": sorted(_status_values(statuses) or set())},
                "start_time": {"$lt": end},
                "end_time": {"$gt": start},
            },
        ).sort("start_time", 1)
        return [Appointment.from_record(record) for record in cursor]

    def update_appointment(
        self,
        appointment_id: str,
        updates: Mapping[str, Any],
        *,
        expected_status: AppointmentStatus | None = None,
    ) -> Appointment | None:
        from pymongo import ReturnDocument

        object_id = _to_object_id(appointment_id)
        if object_id is None:
            return None
        query: dict[str, Any] = {"_id": object_id}
        if expected_status is not None:
            query["status"] = expected_status.value
        record = self._appointments.find_one_and_update(
            query,
            {
                "$set": {
                    **_serialize_appointment_updates(updates),
                    "updated_at": datetime.now(UTC),
                },
            },
            return_document=ReturnDocument.AFTER,
        )
        return Appointment.from_record(record) if record else None

    def create_manual_block(
        self,
        *,
        instructor_id: str,
        start_time: datetime,
        end_time: datetime,
        reason: str | None,
    ) -> ManualBlock:
        payload = {
            "instructor_id": instructor_id,
            "start_time": start_time,
            "end_time": end_time,
            "reason": reason,
            "created_at": datetime.now(UTC),
        }
        insert_result = self._manual_blocks.insert_one(payload)
        payload["_id"] = insert_result.inserted_id
        return ManualBlock.from_record(payload)

    def get_manual_block(self, block_id: str) -> ManualBlock | None:
        object_id = _to_object_id(block_id)
        if object_id is None:
            return None
        record = self._manual_blocks.find_one({"_id": object_id})
        return ManualBlock.from_record(record) if record else None

    def list_manual_blocks(
        self,
        instructor_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ManualBlock]:
        query: dict[str, Any] = {"instructor_id": instructor_id}
        if end is not None:
            query["start_time"] = {"$lt": end}
        if start is not None:
            query["end_time"] = {"$gt": start}
        cursor = self._manual_blocks.find(query).sort("start_time", 1)
        return [ManualBlock.from_record(record) for record in cursor]

    def delete_manual_block(self, block_id: str) -> bool:
        object_id = _to_object_id(block_id)
        if object_id is None:
            return False
        return self._manual_blocks.delete_one({"_id": object_id}).deleted_count > 0

    @contextmanager
    def instructor_lock(
        self,
        instructor_id: str,
        *,
        timeout_seconds: float,
    ) -> Iterator[BookingLease]:
        from pymongo.errors import DuplicateKeyError

        owner = uuid4().hex
        deadline = time.monotonic() + timeout_seconds
        while True:
            now = datetime.now(UTC)
            # The TTL monitor only runs once a minute; clear stale leases eagerly.
            self._locks.delete_one({"_id": instructor_id, "expires_at": {"$lt": now}})
            try:
                self._locks.insert_one(
                    {
                        "_id": instructor_id,
                        "owner": owner,
                        "expires_at": now + timedelta(seconds=_LOCK_LEASE_SECONDS),
                    },
                )
                break
            except DuplicateKeyError:
                if time.monotonic() >= deadline:
                    raise TimeoutError(f"Booking lock for instructor {instructor_id} is busy.") from None
                time.sleep(_LOCK_POLL_SECONDS)
        try:
            yield _MongoBookingLease(self._locks, instructor_id, owner)
        finally:
            self._locks.delete_one({"_id": instructor_id, "owner": owner})


def _to_object_id(raw_id: str) -> Any | None:
    from bson import ObjectId
    from bson.errors import InvalidId

    try:
        return ObjectId(raw_id)
    except (InvalidId, TypeError):
        return None


def _status_values(statuses: Iterable[AppointmentStatus] | None) -> set[str] | None:
    if statuses is None:
        return None
    return {AppointmentStatus(status).value for status in statuses}


def _serialize_appointment_updates(updates: Mapping[str, Any]) -> dict[str, Any]:
    serialized = dict(updates)
    raw_status = serialized.get("status")
    if isinstance(raw_status, AppointmentStatus):
        serialized["status"] = raw_status.value
    raw_contact = serialized.get("student_contact")
    if isinstance(raw_contact, StudentContact):
        serialized["student_contact"] = raw_contact.to_dict()
    return serialized


def create_booking_store(settings: Settings) -> BookingStore:
    return _create_booking_store_cached(
        booking_data_store=settings.booking_data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_appointment_types_collection=settings.mongodb_appointment_types_collection,
        mongodb_appointments_collection=settings.mongodb_appointments_collection,
        mongodb_manual_blocks_collection=settings.mongodb_manual_blocks_collection,
        mongodb_booking_locks_collection=settings.mongodb_booking_locks_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_booking_store_cached(
    *,
    booking_data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_appointment_types_collection: str,
    mongodb_appointments_collection: str,
    mongodb_manual_blocks_collection: str,
    mongodb_booking_locks_collection: str,
    mongodb_connect_timeout_ms: int,
) -> BookingStore:
    if booking_data_store == "mongodb":
        return MongoBookingStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            appointment_types_collection_name=mongodb_appointment_types_collection,
            appointments_collection_name=mongodb_appointments_collection,
            manual_blocks_collection_name=mongodb_manual_blocks_collection,
            booking_locks_collection_name=mongodb_booking_locks_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryBookingStore()


def clear_booking_store_cache() -> None:
    _create_booking_store_cached.cache_clear()
