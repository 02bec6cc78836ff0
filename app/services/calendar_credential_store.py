from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from functools import lru_cache

from app.core.config import Settings
from app.services.booking_models import CalendarCredential


class CalendarCredentialStore(ABC):
    @abstractmethod
    def get_credential(self, instructor_id: str) -> CalendarCredential | None:
        raise NotImplementedError

    @abstractmethod
    def save_credential(self, credential: CalendarCredential) -> CalendarCredential:
        raise NotImplementedError

    @abstractmethod
    def delete_credential(self, instructor_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def consume_oauth_state_nonce(self, nonce: str, *, expires_at: datetime) -> bool:
        """Mark an OAuth state nonce as used.

        Returns ``False`` when the nonce was already consumed.
        """
        raise NotImplementedError


class InMemoryCalendarCredentialStore(CalendarCredentialStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._credentials: dict[str, CalendarCredential] = {}
        self._consumed_nonces: dict[str, datetime] = {}

    def get_credential(self, instructor_id: str) -> CalendarCredential | None:
        with self._lock:
            credential = self._credentials.get(instructor_id)
            if not credential:
                return None
            return CalendarCredential.from_record(credential.to_dict())

    def save_credential(self, credential: CalendarCredential) -> CalendarCredential:
        credential.updated_at = datetime.now(UTC)
        with self._lock:
            self._credentials[credential.instructor_id] = CalendarCredential.from_record(
                credential.to_dict(),
            )
        return credential

    def delete_credential(self, instructor_id: str) -> bool:
        with self._lock:
            return self._credentials.pop(instructor_id, None) is not None

    def consume_oauth_state_nonce(self, nonce: str, *, expires_at: datetime) -> bool:
        now = datetime.now(UTC)
        with self._lock:
            self._consumed_nonces = {
                consumed: expiry
                for consumed, expiry in self._consumed_nonces.items()
                if expiry > now
            }
            if nonce in self._consumed_nonces:
                return False
            self._consumed_nonces[nonce] = expires_at
            return True


class MongoCalendarCredentialStore(CalendarCredentialStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        credentials_collection_name: str,
        oauth_states_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        database = self._client[db_name]
        self._credentials = database[credentials_collection_name]
        self._oauth_states = database[oauth_states_collection_name]

        self._credentials.create_index("instructor_id", unique=True)
        self._oauth_states.create_index("expires_at", expireAfterSeconds=0)

    def get_credential(self, instructor_id: str) -> CalendarCredential | None:
        record = self._credentials.find_one({"instructor_id": instructor_id})
        return CalendarCredential.from_record(record) if record else None

    def save_credential(self, credential: CalendarCredential) -> CalendarCredential:
        credential.updated_at = datetime.now(UTC)
        self._credentials.update_one(
            {"instructor_id": credential.instructor_id},
            {
                "$set": credential.to_dict(),
                "$setOnInsert": {"created_at": credential.updated_at},
            },
            upsert=True,
        )
        return credential

    def delete_credential(self, instructor_id: str) -> bool:
        return self._credentials.delete_one({"instructor_id": instructor_id}).deleted_count > 0

    def consume_oauth_state_nonce(self, nonce: str, *, expires_at: datetime) -> bool:
        from pymongo.errors import DuplicateKeyError

        try:
            self._oauth_states.insert_one({"_id": nonce, "expires_at": expires_at})
        except DuplicateKeyError:
            return False
        return True


def create_calendar_credential_store(settings: Settings) -> CalendarCredentialStore:
    return _create_calendar_credential_store_cached(
        booking_data_store=settings.booking_data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_calendar_credentials_collection=settings.mongodb_calendar_credentials_collection,
        mongodb_oauth_states_collection=settings.mongodb_oauth_states_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_calendar_credential_store_cached(
    *,
    booking_data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_calendar_credentials_collection: str,
    mongodb_oauth_states_collection: str,
    mongodb_connect_timeout_ms: int,
) -> CalendarCredentialStore:
    if booking_data_store == "mongodb":
        return MongoCalendarCredentialStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            credentials_collection_name=mongodb_calendar_credentials_collection,
            oauth_states_collection_name=mongodb_oauth_states_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryCalendarCredentialStore()


def clear_calendar_credential_store_cache() -> None:
    _create_calendar_credential_store_cached.cache_clear()
