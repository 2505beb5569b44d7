from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from .config import LoungeConfig
from .delivery import ChapterDeliveryCache
from .history import ProgressRecorder
from .persistence import BOOKS_COLLECTION, CloudPersistence, LocalPersistence, PersistenceRouter
from .stores import (
    BlobStore,
    DocumentSnapshot,
    DocumentStore,
    FailoverBlobStore,
    FileBlobStore,
    Filter,
    JsonDocumentStore,
)
from .uploads import IngestPipeline


@dataclass
class LoungeBackend:
    """The device store, the optional shared store, and the writers built on them."""

    device: DocumentStore
    device_blobs: BlobStore
    cloud: DocumentStore | None = None
    cloud_blobs: BlobStore | None = None
    cache_size: int = 64

    def __post_init__(self) -> None:
        local = LocalPersistence(self.device, self.device_blobs)
        cloud = CloudPersistence(self.cloud, self.cloud_blobs) if self.cloud is not None else None
        self.router = PersistenceRouter(local, cloud)
        self.pipeline = IngestPipeline(self.router)

    def recorder_for(self, reader_id: str | None) -> ProgressRecorder:
        return ProgressRecorder(self.device, self.cloud, reader_id)

    def reader_session(self, reader_id: str | None) -> ChapterDeliveryCache:
        """A fresh chapter cache reading from the store that holds the reader's books."""
        return ChapterDeliveryCache(
            _ReadThroughStore(self.device, self.cloud),
            recorder=self.recorder_for(reader_id),
            max_entries=self.cache_size,
        )


class _ReadThroughStore(DocumentStore):
    """Reads book data from the device store first, then the shared store.

    View counters and other writes go to whichever store holds the book.
    """

    def __init__(self, device: DocumentStore, cloud: DocumentStore | None) -> None:
        self.device = device
        self.cloud = cloud

    async def _owner(self, collection: str) -> DocumentStore:
        if self.cloud is None:
            return self.device
        parts = collection.split("/")
        book_id = parts[1] if len(parts) > 1 else None
        if book_id is None:
            return self.device
        if await self.device.get(BOOKS_COLLECTION, book_id) is not None:
            return self.device
        return self.cloud

    async def _owner_for_doc(self, collection: str, doc_id: str) -> DocumentStore:
        if collection == BOOKS_COLLECTION:
            return await self._owner(f"{BOOKS_COLLECTION}/{doc_id}")
        return await self._owner(collection)

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        store = await self._owner_for_doc(collection, doc_id)
        return await store.get(collection, doc_id)

    async def set(
        self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False
    ) -> None:
        store = await self._owner_for_doc(collection, doc_id)
        await store.set(collection, doc_id, data, merge=merge)

    async def query(
        self,
        collection: str,
        where: Sequence[Filter] = (),
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[DocumentSnapshot]:
        store = await self._owner(collection)
        return await store.query(
            collection, where, order_by=order_by, descending=descending, limit=limit
        )

    async def get_many(self, collection: str, doc_ids: Sequence[str]) -> list[DocumentSnapshot]:
        store = await self._owner(collection)
        return await store.get_many(collection, doc_ids)

    async def delete(self, collection: str, doc_id: str) -> None:
        store = await self._owner_for_doc(collection, doc_id)
        await store.delete(collection, doc_id)


def build_backend(config: LoungeConfig) -> LoungeBackend:
    device_blobs = FileBlobStore(config.device_dir / "covers")
    cloud = cloud_blobs = None
    if config.cloud_enabled:
        cloud = JsonDocumentStore(config.cloud_dir)
        cloud_blobs = FailoverBlobStore(
            FileBlobStore(config.blob_dir),
            FileBlobStore(config.backup_blob_dir),
            config.failover_bytes,
        )
    return LoungeBackend(
        device=JsonDocumentStore(config.device_dir),
        device_blobs=device_blobs,
        cloud=cloud,
        cloud_blobs=cloud_blobs,
        cache_size=config.cache_size,
    )


__all__ = ["LoungeBackend", "build_backend"]
