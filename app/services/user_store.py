from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from app.core.config import Settings

USER_ROLES = frozenset({"student", "instructor", "admin"})


class UserStore(ABC):
    @abstractmethod
    def get_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def create_user(
        self,
        *,
        email: str,
        full_name: str,
        password_hash: str,
        role: str,
        phone: str | None = None,
    ) -> dict[str, Any]:
        raise NotImplementedError


class InMemoryUserStore(UserStore):
    def __init__(self) -> None:
        self._next_id = 1
        self._users_by_id: dict[str, dict[str, Any]] = {}
        self._user_id_by_email: dict[str, str] = {}

    def get_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        user = self._users_by_id.get(user_id)
        if not user:
            return None
        return dict(user)

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        user_id = self._user_id_by_email.get(_normalize_email(email))
        if not user_id:
            return None
        return self.get_user_by_id(user_id)

    def create_user(
        self,
        *,
        email: str,
        full_name: str,
        password_hash: str,
        role: str,
        phone: str | None = None,
    ) -> dict[str, Any]:
        normalized_email = _normalize_email(email)
        if normalized_email in self._user_id_by_email:
            raise ValueError("email_already_exists")

        user_id = str(self._next_id)
        self._next_id += 1
        user = _build_user_payload(
            email=normalized_email,
            full_name=full_name,
            password_hash=password_hash,
            role=role,
            phone=phone,
        )
        user["_id"] = user_id
        self._users_by_id[user_id] = user
        self._user_id_by_email[normalized_email] = user_id
        return dict(user)


class MongoUserStore(UserStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        users_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._users = self._client[db_name][users_collection_name]
        self._users.create_index("email", unique=True)

    def get_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        from bson import ObjectId
        from bson.errors import InvalidId

        try:
            object_id = ObjectId(user_id)
        except InvalidId:
            return None
        record = self._users.find_one({"_id": object_id})
        return _serialize_user_record(record)

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        record = self._users.find_one({"email": _normalize_email(email)})
        return _serialize_user_record(record)

    def create_user(
        self,
        *,
        email: str,
        full_name: str,
        password_hash: str,
        role: str,
        phone: str | None = None,
    ) -> dict[str, Any]:
        from pymongo.errors import DuplicateKeyError

        payload = _build_user_payload(
            email=_normalize_email(email),
            full_name=full_name,
            password_hash=password_hash,
            role=role,
            phone=phone,
        )
        try:
            insert_result = self._users.insert_one(payload)
        except DuplicateKeyError as exc:
            raise ValueError("email_already_exists") from exc
        created = self._users.find_one({"_id": insert_result.inserted_id})
        serialized = _serialize_user_record(created)
        if not serialized:
            raise RuntimeError("Unable to read created user.")
        return serialized


def _build_user_payload(
    *,
    email: str,
    full_name: str,
    password_hash: str,
    role: str,
    phone: str | None,
) -> dict[str, Any]:
    normalized_role = role.strip().lower()
    if normalized_role not in USER_ROLES:
        raise ValueError("invalid_role")
    now = datetime.now(UTC)
    return {
        "email": email,
        "full_name": full_name.strip(),
        "password_hash": password_hash,
        "role": normalized_role,
        "phone": (phone or "").strip() or None,
        "created_at": now,
        "updated_at": now,
    }


def _serialize_user_record(record: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not record:
        return None
    serialized = dict(record)
    serialized["_id"] = str(record.get("_id", ""))
    return serialized


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def create_user_store(settings: Settings) -> UserStore:
    return _create_user_store_cached(
        user_data_store=settings.user_data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_users_collection=settings.mongodb_users_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_user_store_cached(
    *,
    user_data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_users_collection: str,
    mongodb_connect_timeout_ms: int,
) -> UserStore:
    if user_data_store == "mongodb":
        return MongoUserStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            users_collection_name=mongodb_users_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryUserStore()


def clear_user_store_cache() -> None:
    _create_user_store_cached.cache_clear()
