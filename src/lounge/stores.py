"""Document and blob store abstractions used by the ingestion and reader pipeline.

Every operation is a coroutine; awaiting one is a store round-trip.  The
in-memory stores stand in for the hosted backend, the JSON store is the
on-device store.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Iterable, Mapping, Sequence

from .errors import QuotaExceededError, StoreError

logger = logging.getLogger(__name__)

MAX_KEYS_PER_QUERY = 10
DEFAULT_FAILOVER_THRESHOLD = 10 * 1024 * 1024

_SUPPORTED_OPERATORS = {"==", "in", ">=", "<=", "array-contains"}

Filter = tuple[str, str, Any]


class _ServerTimestamp:
    _instance: "_ServerTimestamp | None" = None

    def __new__(cls) -> "_ServerTimestamp":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True, slots=True)
class Increment:
    """Field transform adding ``amount`` to the stored number (missing counts as 0)."""

    amount: int


def _resolve_field(value: Any, current: Any, now: Any) -> Any:
    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, Increment):
        base = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
        return base + value.amount
    return value


@dataclass(slots=True)
class DocumentSnapshot:
    id: str
    data: dict[str, Any]


def join_path(*segments: str) -> str:
    return "/".join(segment.strip("/") for segment in segments if segment)


def _check_doc_id(doc_id: str) -> str:
    if not isinstance(doc_id, str) or not doc_id or "/" in doc_id or doc_id in {".", ".."}:
        raise ValueError(f"Invalid document id: {doc_id!r}")
    return doc_id


def _check_key_batch(keys: Sequence[object]) -> None:
    if len(keys) > MAX_KEYS_PER_QUERY:
        raise ValueError(
            f"Batch key queries accept at most {MAX_KEYS_PER_QUERY} keys, got {len(keys)}"
        )


def _matches(data: Mapping[str, Any], filters: Iterable[Filter]) -> bool:
    for field_name, op, expected in filters:
        actual = data.get(field_name)
        if op == "==":
            if actual != expected:
                return False
        elif op == "in":
            if actual not in expected:
                return False
        elif op == "array-contains":
            if not isinstance(actual, list) or expected not in actual:
                return False
        elif op in {">=", "<="}:
            if actual is None:
                return False
            try:
                if op == ">=" and not actual >= expected:
                    return False
                if op == "<=" and not actual <= expected:
                    return False
            except TypeError:
                return False
    return True


def _validate_filters(filters: Sequence[Filter]) -> None:
    for _, op, value in filters:
        if op not in _SUPPORTED_OPERATORS:
            raise ValueError(f"Unsupported filter operator: {op}")
        if op == "in":
            _check_key_batch(list(value))


def _sort_key(value: Any) -> tuple[int, Any]:
    if value is None:
        return (1, 0)
    if isinstance(value, datetime):
        return (0, value.timestamp())
    return (0, value)


def _apply_query(
    documents: Iterable[DocumentSnapshot],
    filters: Sequence[Filter],
    order_by: str | None,
    descending: bool,
    limit: int | None,
) -> list[DocumentSnapshot]:
    matched = [doc for doc in documents if _matches(doc.data, filters)]
    if order_by:
        present = [doc for doc in matched if doc.data.get(order_by) is not None]
        missing = [doc for doc in matched if doc.data.get(order_by) is None]
        try:
            present.sort(key=lambda doc: _sort_key(doc.data.get(order_by)), reverse=descending)
        except TypeError:
            present.sort(key=lambda doc: str(doc.data.get(order_by)), reverse=descending)
        matched = present + missing
    if limit is not None:
        matched = matched[: max(0, limit)]
    return matched


class DocumentStore(ABC):
    """Keyed document collections addressed by slash-separated paths."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        ...

    @abstractmethod
    async def set(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        merge: bool = False,
    ) -> None:
        ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        where: Sequence[Filter] = (),
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[DocumentSnapshot]:
        ...

    @abstractmethod
    async def get_many(self, collection: str, doc_ids: Sequence[str]) -> list[DocumentSnapshot]:
        """Fetch up to ``MAX_KEYS_PER_QUERY`` documents by id in one round-trip."""

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        ...


class MemoryDocumentStore(DocumentStore):
    """Process-local store; ``SERVER_TIMESTAMP`` resolves to aware datetimes.

    Field transforms are applied inside ``set`` without yielding, so
    concurrent ``Increment`` writes never lose an update.
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self.calls: list[tuple[str, str, object]] = []

    def _resolve(
        self, data: Mapping[str, Any], existing: Mapping[str, Any] | None
    ) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        current = existing or {}
        return {
            key: copy.deepcopy(_resolve_field(value, current.get(key), now))
            for key, value in data.items()
        }

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        self.calls.append(("get", collection, doc_id))
        stored = self._collections.get(collection, {}).get(_check_doc_id(doc_id))
        return copy.deepcopy(stored) if stored is not None else None

    async def set(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        merge: bool = False,
    ) -> None:
        self.calls.append(("set", collection, doc_id))
        docs = self._collections.setdefault(collection, {})
        existing = docs.get(_check_doc_id(doc_id))
        resolved = self._resolve(data, existing if merge else None)
        if merge and existing is not None:
            existing.update(resolved)
        else:
            docs[doc_id] = resolved

    async def query(
        self,
        collection: str,
        where: Sequence[Filter] = (),
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[DocumentSnapshot]:
        _validate_filters(where)
        self.calls.append(("query", collection, tuple(where)))
        snapshots = [
            DocumentSnapshot(id=doc_id, data=copy.deepcopy(data))
            for doc_id, data in self._collections.get(collection, {}).items()
        ]
        return _apply_query(snapshots, where, order_by, descending, limit)

    async def get_many(self, collection: str, doc_ids: Sequence[str]) -> list[DocumentSnapshot]:
        _check_key_batch(doc_ids)
        self.calls.append(("get_many", collection, tuple(doc_ids)))
        docs = self._collections.get(collection, {})
        found: list[DocumentSnapshot] = []
        for doc_id in doc_ids:
            data = docs.get(_check_doc_id(doc_id))
            if data is not None:
                found.append(DocumentSnapshot(id=doc_id, data=copy.deepcopy(data)))
        return found

    async def delete(self, collection: str, doc_id: str) -> None:
        self.calls.append(("delete", collection, doc_id))
        self._collections.get(collection, {}).pop(_check_doc_id(doc_id), None)


def _json_default(value: object) -> object:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class JsonDocumentStore(DocumentStore):
    """On-device store: one JSON file per document under ``root``.

    Timestamps are assigned by the client as ISO-8601 strings.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def _collection_dir(self, collection: str) -> Path:
        parts = PurePosixPath(collection).parts
        if not parts or any(part in {"", ".", ".."} for part in parts):
            raise ValueError(f"Invalid collection path: {collection!r}")
        return self.root.joinpath(*parts)

    def _doc_path(self, collection: str, doc_id: str) -> Path:
        return self._collection_dir(collection) / f"{_check_doc_id(doc_id)}.json"

    def _read(self, path: Path) -> dict[str, Any] | None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreError(f"Failed to read {path.name}: {exc}") from exc
        return payload if isinstance(payload, dict) else None

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        return self._read(self._doc_path(collection, doc_id))

    async def set(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        merge: bool = False,
    ) -> None:
        path = self._doc_path(collection, doc_id)
        now = datetime.now(timezone.utc).isoformat()
        current = self._read(path) if merge else None
        payload: dict[str, Any] = dict(current or {})
        payload.update(
            {key: _resolve_field(value, payload.get(key), now) for key, value in data.items()}
        )
        self._write(path, payload, f"{collection}/{doc_id}")

    def _write(self, path: Path, payload: Mapping[str, Any], label: str) -> None:
        # Readers see either the old or the new document, never a torn one.
        tmp_path: Path | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=path.parent, suffix=".tmp", delete=False
            ) as tmp:
                tmp_path = Path(tmp.name)
                json.dump(payload, tmp, ensure_ascii=False, indent=2, default=_json_default)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as exc:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise StoreError(f"Failed to write {label}: {exc}") from exc

    async def query(
        self,
        collection: str,
        where: Sequence[Filter] = (),
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[DocumentSnapshot]:
        _validate_filters(where)
        directory = self._collection_dir(collection)
        if not directory.is_dir():
            return []
        snapshots: list[DocumentSnapshot] = []
        for path in sorted(directory.glob("*.json")):
            data = self._read(path)
            if data is not None:
                snapshots.append(DocumentSnapshot(id=path.stem, data=data))
        return _apply_query(snapshots, where, order_by, descending, limit)

    async def get_many(self, collection: str, doc_ids: Sequence[str]) -> list[DocumentSnapshot]:
        _check_key_batch(doc_ids)
        found: list[DocumentSnapshot] = []
        for doc_id in doc_ids:
            data = self._read(self._doc_path(collection, doc_id))
            if data is not None:
                found.append(DocumentSnapshot(id=doc_id, data=data))
        return found

    async def delete(self, collection: str, doc_id: str) -> None:
        try:
            self._doc_path(collection, doc_id).unlink(missing_ok=True)
        except OSError as exc:
            raise StoreError(f"Failed to delete {collection}/{doc_id}: {exc}") from exc


class BlobStore(ABC):
    @abstractmethod
    async def upload(self, path: str, data: bytes, content_type: str | None = None) -> str:
        """Store ``data`` at ``path`` and return a stable URL."""


class MemoryBlobStore(BlobStore):
    def __init__(self, capacity_bytes: int | None = None, scheme: str = "memory") -> None:
        self.capacity_bytes = capacity_bytes
        self.scheme = scheme
        self.blobs: dict[str, tuple[bytes, str | None]] = {}

    @property
    def used_bytes(self) -> int:
        return sum(len(data) for data, _ in self.blobs.values())

    async def upload(self, path: str, data: bytes, content_type: str | None = None) -> str:
        if self.capacity_bytes is not None and self.used_bytes + len(data) > self.capacity_bytes:
            raise QuotaExceededError(f"Blob store quota exceeded uploading {path}")
        self.blobs[path] = (bytes(data), content_type)
        return f"{self.scheme}://{path}"


class FileBlobStore(BlobStore):
    def __init__(self, root: Path) -> None:
        self.root = root

    async def upload(self, path: str, data: bytes, content_type: str | None = None) -> str:
        parts = PurePosixPath(path).parts
        if not parts or any(part in {"", ".", ".."} for part in parts):
            raise ValueError(f"Invalid blob path: {path!r}")
        target = self.root.joinpath(*parts)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise StoreError(f"Failed to store blob {path}: {exc}") from exc
        return target.resolve().as_uri()


class FailoverBlobStore(BlobStore):
    """Primary blob store with a backup for oversized files and quota failures."""

    def __init__(
        self,
        primary: BlobStore,
        backup: BlobStore,
        max_primary_bytes: int = DEFAULT_FAILOVER_THRESHOLD,
    ) -> None:
        self.primary = primary
        self.backup = backup
        self.max_primary_bytes = max_primary_bytes

    async def upload(self, path: str, data: bytes, content_type: str | None = None) -> str:
        if len(data) > self.max_primary_bytes:
            logger.info("Blob %s exceeds %d bytes; using backup store", path, self.max_primary_bytes)
            return await self._upload_backup(path, data, content_type)
        try:
            return await self.primary.upload(path, data, content_type)
        except QuotaExceededError:
            logger.warning("Primary blob store is full; using backup store for %s", path)
            return await self._upload_backup(path, data, content_type)

    async def _upload_backup(self, path: str, data: bytes, content_type: str | None) -> str:
        try:
            return await self.backup.upload(path, data, content_type)
        except StoreError as exc:
            raise StoreError(f"Upload failed on both primary and backup stores: {exc}") from exc


__all__ = [
    "BlobStore",
    "DocumentSnapshot",
    "DocumentStore",
    "FailoverBlobStore",
    "FileBlobStore",
    "JsonDocumentStore",
    "MAX_KEYS_PER_QUERY",
    "MemoryBlobStore",
    "MemoryDocumentStore",
    "Increment",
    "SERVER_TIMESTAMP",
    "join_path",
]
