from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from functools import lru_cache
from threading import Lock
from typing import Any
from uuid import uuid4

from app.core.config import Settings


class DuplicateMemoError(Exception):
    def __init__(self, existing_memo_id: str) -> None:
        super().__init__(f"Memo already exists id={existing_memo_id}")
        self.existing_memo_id = existing_memo_id


class MemoStore(ABC):
    @abstractmethod
    def get_by_source(
        self,
        *,
        user_id: str,
        source: str,
        source_external_id: str,
    ) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def get_by_id(self, memo_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def insert_memo(self, record: Mapping[str, Any]) -> str:
        """Persist a memo, raising ``DuplicateMemoError`` when its source key is taken."""
        raise NotImplementedError

    @abstractmethod
    def update_document_link(
        self,
        memo_id: str,
        *,
        document_id: str,
        document_url: str,
    ) -> int:
        raise NotImplementedError

    @abstractmethod
    def insert_action_items(self, records: Sequence[Mapping[str, Any]]) -> int:
        raise NotImplementedError

    @abstractmethod
    def list_action_items(self, memo_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemoryMemoStore(MemoStore):
    def __init__(self) -> None:
        self._memos: dict[str, dict[str, Any]] = {}
        self._memo_id_by_source: dict[tuple[str, str, str], str] = {}
        self._action_items: list[dict[str, Any]] = []
        self._lock = Lock()

    def get_by_source(
        self,
        *,
        user_id: str,
        source: str,
        source_external_id: str,
    ) -> dict[str, Any] | None:
        memo_id = self._memo_id_by_source.get((user_id, source, source_external_id))
        if not memo_id:
            return None
        return self.get_by_id(memo_id)

    def get_by_id(self, memo_id: str) -> dict[str, Any] | None:
        memo = self._memos.get(memo_id)
        return dict(memo) if memo else None

    def insert_memo(self, record: Mapping[str, Any]) -> str:
        with self._lock:
            source_key = _source_key(record)
            if source_key and source_key in self._memo_id_by_source:
                raise DuplicateMemoError(self._memo_id_by_source[source_key])

            memo_id = f"memory-memo-{len(self._memos) + 1}"
            stored_record = dict(record)
            stored_record["_id"] = memo_id
            self._memos[memo_id] = stored_record
            if source_key:
                self._memo_id_by_source[source_key] = memo_id
            return memo_id

    def update_document_link(
        self,
        memo_id: str,
        *,
        document_id: str,
        document_url: str,
    ) -> int:
        memo = self._memos.get(memo_id)
        if not memo:
            return 0
        memo["document_id"] = document_id
        memo["document_url"] = document_url
        memo["updated_at"] = datetime.now(UTC)
        return 1

    def insert_action_items(self, records: Sequence[Mapping[str, Any]]) -> int:
        with self._lock:
            for record in records:
                stored_record = dict(record)
                stored_record["_id"] = f"memory-task-{len(self._action_items) + 1}"
                self._action_items.append(stored_record)
        return len(records)

    def list_action_items(self, memo_id: str) -> list[dict[str, Any]]:
        return [dict(item) for item in self._action_items if item.get("memo_id") == memo_id]


class MongoMemoStore(MemoStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        memos_collection_name: str,
        action_items_collection_name: str,
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
        self._memos = database[memos_collection_name]
        self._action_items = database[action_items_collection_name]

        self._memos.create_index(
            [("user_id", ASCENDING), ("source", ASCENDING), ("source_external_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"source_external_id": {"$type": "string"}},
        )
        self._action_items.create_index([("memo_id", ASCENDING)])

    def get_by_source(
        self,
        *,
        user_id: str,
        source: str,
        source_external_id: str,
    ) -> dict[str, Any] | None:
        return self._memos.find_one(
            {"user_id": user_id, "source": source, "source_external_id": source_external_id},
        )

    def get_by_id(self, memo_id: str) -> dict[str, Any] | None:
        return self._memos.find_one({"_id": memo_id})

    def insert_memo(self, record: Mapping[str, Any]) -> str:
        from pymongo.errors import DuplicateKeyError

        payload = dict(record)
        payload["_id"] = uuid4().hex
        try:
            self._memos.insert_one(payload)
        except DuplicateKeyError:
            source_key = _source_key(payload)
            if not source_key:
                raise
            user_id, source, source_external_id = source_key
            existing = self.get_by_source(
                user_id=user_id,
                source=source,
                source_external_id=source_external_id,
            )
            if not existing:
                raise
            raise DuplicateMemoError(str(existing["_id"])) from None
        return str(payload["_id"])

    def update_document_link(
        self,
        memo_id: str,
        *,
        document_id: str,
        document_url: str,
    ) -> int:
        result = self._memos.update_one(
            {"_id": memo_id},
            {
                "$set": {
                    "document_id": document_id,
                    "document_url": document_url,
                    "updated_at": datetime.now(UTC),
                },
            },
        )
        return int(result.matched_count)

    def insert_action_items(self, records: Sequence[Mapping[str, Any]]) -> int:
        if not records:
            return 0
        payloads = [{**record, "_id": uuid4().hex} for record in records]
        result = self._action_items.insert_many(payloads)
        return len(result.inserted_ids)

    def list_action_items(self, memo_id: str) -> list[dict[str, Any]]:
        return list(self._action_items.find({"memo_id": memo_id}))


def _source_key(record: Mapping[str, Any]) -> tuple[str, str, str] | None:
    source_external_id = record.get("source_external_id")
    if not isinstance(source_external_id, str) or not source_external_id:
        return None
    return (str(record.get("user_id")), str(record.get("source")), source_external_id)


def create_memo_store(settings: Settings) -> MemoStore:
    return _create_memo_store_cached(
        store_name=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_memos_collection_name=settings.mongodb_memos_collection,
        mongodb_action_items_collection_name=settings.mongodb_action_items_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_memo_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_memos_collection_name: str,
    mongodb_action_items_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> MemoStore:
    if store_name == "mongodb":
        return MongoMemoStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            memos_collection_name=mongodb_memos_collection_name,
            action_items_collection_name=mongodb_action_items_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )
    return InMemoryMemoStore()


def clear_memo_store_cache() -> None:
    _create_memo_store_cached.cache_clear()
