from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Collection, Mapping
from datetime import datetime
from functools import lru_cache
from threading import Lock
from typing import Any
from uuid import uuid4

from app.core.config import Settings


class ProcessingJobStore(ABC):
    @abstractmethod
    def insert(self, record: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def get_by_id(self, job_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def list_by_user(
        self,
        user_id: str,
        *,
        limit: int,
        statuses: Collection[str] | None = None,
        oldest_first: bool = False,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def find_active(
        self,
        *,
        user_id: str,
        source: str,
        source_external_id: str,
    ) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def update_if_status(
        self,
        job_id: str,
        *,
        expected_statuses: Collection[str],
        updates: Mapping[str, Any],
    ) -> dict[str, Any] | None:
        """Apply ``updates`` only while the row still reads one of ``expected_statuses``."""
        raise NotImplementedError

    @abstractmethod
    def delete_many(
        self,
        *,
        user_id: str | None,
        status: str,
        older_than: datetime | None = None,
        timestamp_field: str = "created_at",
    ) -> int:
        raise NotImplementedError


class InMemoryProcessingJobStore(ProcessingJobStore):
    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = Lock()

    def insert(self, record: Mapping[str, Any]) -> dict[str, Any]:
        with self._lock:
            job_id = f"memory-job-{len(self._records) + 1}-{uuid4().hex[:8]}"
            stored_record = dict(record)
            stored_record["_id"] = job_id
            self._records[job_id] = stored_record
            return _copy_record(stored_record)

    def get_by_id(self, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(job_id)
            return _copy_record(record) if record else None

    def list_by_user(
        self,
        user_id: str,
        *,
        limit: int,
        statuses: Collection[str] | None = None,
        oldest_first: bool = False,
    ) -> list[dict[str, Any]]:
        with self._lock:
            items = [
                _copy_record(record)
                for record in self._records.values()
                if record.get("user_id") == user_id
                and (statuses is None or record.get("status") in statuses)
            ]
        items.sort(key=lambda record: record["created_at"], reverse=not oldest_first)
        return items[:limit]

    def find_active(
        self,
        *,
        user_id: str,
        source: str,
        source_external_id: str,
    ) -> dict[str, Any] | None:
        with self._lock:
            for record in self._records.values():
                if (
                    record.get("user_id") == user_id
                    and record.get("source") == source
                    and record.get("source_external_id") == source_external_id
                    and record.get("status") in {"pending", "processing"}
                ):
                    return _copy_record(record)
        return None

    def update_if_status(
        self,
        job_id: str,
        *,
        expected_statuses: Collection[str],
        updates: Mapping[str, Any],
    ) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(job_id)
            if not record or record.get("status") not in expected_statuses:
                return None
            record.update(dict(updates))
            return _copy_record(record)

    def delete_many(
        self,
        *,
        user_id: str | None,
        status: str,
        older_than: datetime | None = None,
        timestamp_field: str = "created_at",
    ) -> int:
        with self._lock:
            doomed_ids = [
                job_id
                for job_id, record in self._records.items()
                if record.get("status") == status
                and (user_id is None or record.get("user_id") == user_id)
                and (older_than is None or record[timestamp_field] < older_than)
            ]
            for job_id in doomed_ids:
                del self._records[job_id]
        return len(doomed_ids)


class MongoProcessingJobStore(ProcessingJobStore):
    def __init__(
        self,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import ASCENDING, DESCENDING, MongoClient

        self._asc = ASCENDING
        self._desc = DESCENDING
        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index([("user_id", self._asc), ("created_at", self._desc)])
        self._collection.create_index([("status", self._asc), ("created_at", self._asc)])
        self._collection.create_index(
            [("user_id", self._asc), ("source", self._asc), ("source_external_id", self._asc)],
        )

    def insert(self, record: Mapping[str, Any]) -> dict[str, Any]:
        payload = dict(record)
        payload["_id"] = uuid4().hex
        self._collection.insert_one(payload)
        return payload

    def get_by_id(self, job_id: str) -> dict[str, Any] | None:
        return self._collection.find_one({"_id": job_id})

    def list_by_user(
        self,
        user_id: str,
        *,
        limit: int,
        statuses: Collection[str] | None = None,
        oldest_first: bool = False,
    ) -> list[dict[str, Any]]:
        query: dict[str, Any] = {"user_id": user_id}
        if statuses is not None:
            query["status"] = {"$in": list(statuses)}
        direction = self._asc if oldest_first else self._desc
        cursor = self._collection.find(query).sort("created_at", direction).limit(limit)
        return list(cursor)

    def find_active(
        self,
        *,
        user_id: str,
        source: str,
        source_external_id: str,
    ) -> dict[str, Any] | None:
        return self._collection.find_one(
            {
                "user_id": user_id,
                "source": source,
                "source_external_id": source_external_id,
                "status": {"$in": ["pending", "processing"]},
            },
        )

    def update_if_status(
        self,
        job_id: str,
        *,
        expected_statuses: Collection[str],
        updates: Mapping[str, Any],
    ) -> dict[str, Any] | None:
        from pymongo import ReturnDocument

        return self._collection.find_one_and_update(
            {"_id": job_id, "status": {"$in": list(expected_statuses)}},
            {"$set": dict(updates)},
            return_document=ReturnDocument.AFTER,
        )

    def delete_many(
        self,
        *,
        user_id: str | None,
        status: str,
        older_than: datetime | None = None,
        timestamp_field: str = "created_at",
    ) -> int:
        query: dict[str, Any] = {"status": status}
        if user_id is not None:
            query["user_id"] = user_id
        if older_than is not None:
            query[timestamp_field] = {"$lt": older_than}
        result = self._collection.delete_many(query)
        return int(result.deleted_count)


def _copy_record(record: Mapping[str, Any]) -> dict[str, Any]:
    copied = dict(record)
    for key in ("result", "metadata"):
        value = copied.get(key)
        if isinstance(value, Mapping):
            copied[key] = dict(value)
    return copied


def create_job_store(settings: Settings) -> ProcessingJobStore:
    return _create_job_store_cached(
        store_name=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_jobs_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_job_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> ProcessingJobStore:
    if store_name == "memory":
        return InMemoryProcessingJobStore()

    if store_name == "mongodb":
        return MongoProcessingJobStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryProcessingJobStore()


def clear_job_store_cache() -> None:
    _create_job_store_cached.cache_clear()
