from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from functools import lru_cache
from typing import Any
from uuid import uuid4

from app.core.config import Settings


class CompanyStore(ABC):
    @abstractmethod
    def list_by_user(self, user_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def get_by_id(self, company_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def insert(self, record: Mapping[str, Any]) -> str:
        raise NotImplementedError


class InMemoryCompanyStore(CompanyStore):
    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}

    def list_by_user(self, user_id: str) -> list[dict[str, Any]]:
        return [
            dict(record) for record in self._records.values() if record.get("user_id") == user_id
        ]

    def get_by_id(self, company_id: str) -> dict[str, Any] | None:
        record = self._records.get(company_id)
        return dict(record) if record else None

    def insert(self, record: Mapping[str, Any]) -> str:
        company_id = f"memory-company-{len(self._records) + 1}"
        stored_record = dict(record)
        stored_record["_id"] = company_id
        self._records[company_id] = stored_record
        return company_id


class MongoCompanyStore(CompanyStore):
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
        self._collection.create_index([("user_id", ASCENDING), ("normalized_domain", ASCENDING)])

    def list_by_user(self, user_id: str) -> list[dict[str, Any]]:
        return list(self._collection.find({"user_id": user_id}))

    def get_by_id(self, company_id: str) -> dict[str, Any] | None:
        return self._collection.find_one({"_id": company_id})

    def insert(self, record: Mapping[str, Any]) -> str:
        payload = dict(record)
        payload["_id"] = uuid4().hex
        self._collection.insert_one(payload)
        return str(payload["_id"])


def create_company_store(settings: Settings) -> CompanyStore:
    return _create_company_store_cached(
        store_name=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_companies_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_company_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> CompanyStore:
    if store_name == "mongodb":
        return MongoCompanyStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )
    return InMemoryCompanyStore()


def clear_company_store_cache() -> None:
    _create_company_store_cached.cache_clear()
