from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from app.core.config import Settings

FIREFLIES_PROVIDER = "fireflies"
GRANOLA_PROVIDER = "granola"
GOOGLE_PROVIDER = "google"


class CredentialStore(ABC):
    """Per-user, per-provider integration values (api keys, oauth tokens, routing ids)."""

    @abstractmethod
    def get_credentials(self, user_id: str, provider: str) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def find_user_id(self, provider: str | None, key: str, value: str) -> str | None:
        raise NotImplementedError

    @abstractmethod
    def upsert_credentials(
        self,
        user_id: str,
        provider: str,
        values: Mapping[str, Any],
    ) -> None:
        raise NotImplementedError


class InMemoryCredentialStore(CredentialStore):
    def __init__(self) -> None:
        self._values: dict[tuple[str, str], dict[str, Any]] = {}

    def get_credentials(self, user_id: str, provider: str) -> dict[str, Any]:
        return dict(self._values.get((user_id, provider), {}))

    def find_user_id(self, provider: str | None, key: str, value: str) -> str | None:
        normalized_value = _normalize_lookup_value(key, value)
        for (user_id, stored_provider), values in self._values.items():
            if provider is not None and stored_provider != provider:
                continue
            stored_value = values.get(key)
            if not isinstance(stored_value, str):
                continue
            if _normalize_lookup_value(key, stored_value) == normalized_value:
                return user_id
        return None

    def upsert_credentials(
        self,
        user_id: str,
        provider: str,
        values: Mapping[str, Any],
    ) -> None:
        current_values = dict(self._values.get((user_id, provider), {}))
        for key, value in values.items():
            if value is None or value == "":
                current_values.pop(key, None)
            else:
                current_values[key] = value
        self._values[(user_id, provider)] = current_values


class MongoCredentialStore(CredentialStore):
    def __init__(
        self,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import ASCENDING, MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index(
            [("user_id", ASCENDING), ("provider", ASCENDING)],
            unique=True,
        )

    def get_credentials(self, user_id: str, provider: str) -> dict[str, Any]:
        record = self._collection.find_one({"user_id": user_id, "provider": provider})
        if not record:
            return {}
        values = record.get("values")
        if not isinstance(values, Mapping):
            return {}
        return dict(values)

    def find_user_id(self, provider: str | None, key: str, value: str) -> str | None:
        query: dict[str, Any] = {f"values.{key}": _normalize_lookup_value(key, value)}
        if provider is not None:
            query["provider"] = provider
        record = self._collection.find_one(query, {"user_id": 1})
        if not record:
            return None
        return str(record.get("user_id"))

    def upsert_credentials(
        self,
        user_id: str,
        provider: str,
        values: Mapping[str, Any],
    ) -> None:
        set_fields: dict[str, Any] = {"updated_at": datetime.now(UTC)}
        unset_fields: dict[str, str] = {}
        for key, value in values.items():
            if value is None or value == "":
                unset_fields[f"values.{key}"] = ""
            else:
                set_fields[f"values.{key}"] = _normalize_lookup_value(key, value)

        update: dict[str, Any] = {
            "$set": set_fields,
            "$setOnInsert": {"created_at": datetime.now(UTC)},
        }
        if unset_fields:
            update["$unset"] = unset_fields
        self._collection.update_one(
            {"user_id": user_id, "provider": provider},
            update,
            upsert=True,
        )


def _normalize_lookup_value(key: str, value: Any) -> Any:
    if key.endswith("email") and isinstance(value, str):
        return value.strip().lower()
    return value


def create_credential_store(settings: Settings) -> CredentialStore:
    return _create_credential_store_cached(
        store_name=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_integrations_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_credential_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> CredentialStore:
    if store_name == "mongodb":
        return MongoCredentialStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )
    return InMemoryCredentialStore()


def clear_credential_store_cache() -> None:
    _create_credential_store_cached.cache_clear()
