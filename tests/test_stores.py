from __future__ import annotations

import asyncio
import json
from datetime import datetime

import pytest

from lounge.errors import QuotaExceededError, StoreError
from lounge.stores import (
    SERVER_TIMESTAMP,
    FailoverBlobStore,
    Increment,
    FileBlobStore,
    JsonDocumentStore,
    MemoryBlobStore,
    MemoryDocumentStore,
)


def test_memory_store_merges_and_resolves_server_timestamps() -> None:
    store = MemoryDocumentStore()

    async def scenario():
        await store.set("books", "b1", {"title": "One", "views": 1})
        await store.set("books", "b1", {"views": 2, "last_updated": SERVER_TIMESTAMP}, merge=True)
        return await store.get("books", "b1")

    doc = asyncio.run(scenario())

    assert doc["title"] == "One"
    assert doc["views"] == 2
    assert isinstance(doc["last_updated"], datetime)
    assert doc["last_updated"].tzinfo is not None


def test_set_without_merge_replaces_document() -> None:
    store = MemoryDocumentStore()

    async def scenario():
        await store.set("books", "b1", {"title": "One", "views": 1})
        await store.set("books", "b1", {"title": "Uno"})
        return await store.get("books", "b1")

    assert asyncio.run(scenario()) == {"title": "Uno"}


def test_query_filters_orders_and_limits() -> None:
    store = MemoryDocumentStore()

    async def scenario():
        for number in (3, 1, 7, 5):
            await store.set("books/b1/chapters", str(number), {"chapter_number": number})
        ascending = await store.query(
            "books/b1/chapters", [("chapter_number", ">=", 2)], order_by="chapter_number", limit=2
        )
        descending = await store.query(
            "books/b1/chapters",
            [("chapter_number", "<=", 6)],
            order_by="chapter_number",
            descending=True,
        )
        members = await store.query("books/b1/chapters", [("chapter_number", "in", [1, 7, 9])])
        return ascending, descending, members

    ascending, descending, members = asyncio.run(scenario())

    assert [doc.id for doc in ascending] == ["3", "5"]
    assert [doc.id for doc in descending] == ["5", "3", "1"]
    assert sorted(doc.id for doc in members) == ["1", "7"]


def test_batch_queries_reject_more_than_ten_keys() -> None:
    store = MemoryDocumentStore()
    keys = [str(number) for number in range(11)]

    with pytest.raises(ValueError):
        asyncio.run(store.get_many("books/b1/chapters", keys))
    with pytest.raises(ValueError):
        asyncio.run(store.query("books/b1/chapters", [("chapter_number", "in", list(range(11)))]))


def test_returned_documents_are_copies() -> None:
    store = MemoryDocumentStore()

    async def scenario():
        await store.set("books", "b1", {"genres": ["fantasy"]})
        doc = await store.get("books", "b1")
        doc["genres"].append("romance")
        return await store.get("books", "b1")

    assert asyncio.run(scenario()) == {"genres": ["fantasy"]}


def test_json_store_persists_one_file_per_document(tmp_path) -> None:
    store = JsonDocumentStore(tmp_path)

    async def scenario():
        await store.set("books/b1/chapters", "1", {"chapter_number": 1, "title": "Ünïcode"})
        await store.set("books", "b1", {"created_at": SERVER_TIMESTAMP})
        snapshots = await store.get_many("books/b1/chapters", ["1", "2"])
        await store.delete("books/b1/chapters", "1")
        after = await store.get("books/b1/chapters", "1")
        return snapshots, after

    snapshots, after = asyncio.run(scenario())

    assert [snapshot.id for snapshot in snapshots] == ["1"]
    assert after is None
    book = json.loads((tmp_path / "books" / "b1.json").read_text(encoding="utf-8"))
    assert datetime.fromisoformat(book["created_at"]).tzinfo is not None


def test_json_store_reports_corrupt_documents(tmp_path) -> None:
    (tmp_path / "books").mkdir()
    (tmp_path / "books" / "b1.json").write_text("{not json", encoding="utf-8")
    store = JsonDocumentStore(tmp_path)

    with pytest.raises(StoreError):
        asyncio.run(store.get("books", "b1"))


def test_document_ids_may_not_contain_slashes() -> None:
    with pytest.raises(ValueError):
        asyncio.run(MemoryDocumentStore().get("books", "a/b"))


def test_failover_uses_backup_for_large_files() -> None:
    primary = MemoryBlobStore(scheme="primary")
    backup = MemoryBlobStore(scheme="backup")
    store = FailoverBlobStore(primary, backup, max_primary_bytes=4)

    small = asyncio.run(store.upload("covers/a.jpg", b"abc", "image/jpeg"))
    large = asyncio.run(store.upload("covers/b.jpg", b"abcdef", "image/jpeg"))

    assert small == "primary://covers/a.jpg"
    assert large == "backup://covers/b.jpg"


def test_failover_uses_backup_when_primary_is_full() -> None:
    primary = MemoryBlobStore(capacity_bytes=2, scheme="primary")
    backup = MemoryBlobStore(scheme="backup")
    store = FailoverBlobStore(primary, backup)

    url = asyncio.run(store.upload("covers/a.jpg", b"abc"))

    assert url == "backup://covers/a.jpg"
    assert "covers/a.jpg" in backup.blobs


def test_failover_raises_when_both_stores_fail() -> None:
    store = FailoverBlobStore(
        MemoryBlobStore(capacity_bytes=1), MemoryBlobStore(capacity_bytes=1)
    )

    with pytest.raises(StoreError):
        asyncio.run(store.upload("covers/a.jpg", b"abc"))


def test_memory_blob_store_enforces_quota() -> None:
    with pytest.raises(QuotaExceededError):
        asyncio.run(MemoryBlobStore(capacity_bytes=1).upload("x", b"ab"))


def test_file_blob_store_returns_file_uri(tmp_path) -> None:
    url = asyncio.run(FileBlobStore(tmp_path).upload("bookCovers/b1/1_cover.jpg", b"jpeg"))

    assert url.startswith("file://")
    assert (tmp_path / "bookCovers" / "b1" / "1_cover.jpg").read_bytes() == b"jpeg"


@pytest.mark.parametrize("kind", ["memory", "json"])
def test_increment_adds_to_the_stored_number(tmp_path, kind) -> None:
    store = MemoryDocumentStore() if kind == "memory" else JsonDocumentStore(tmp_path)

    async def scenario():
        await store.set("stats", "storageUsage", {"storage_bytes_used": Increment(300)}, merge=True)
        await asyncio.gather(
            *(
                store.set("stats", "storageUsage", {"storage_bytes_used": Increment(50)}, merge=True)
                for _ in range(4)
            )
        )
        await store.set("stats", "storageUsage", {"storage_bytes_used": Increment(-100)}, merge=True)
        return await store.get("stats", "storageUsage")

    assert asyncio.run(scenario()) == {"storage_bytes_used": 400}


def test_json_store_writes_leave_no_temporary_files(tmp_path) -> None:
    store = JsonDocumentStore(tmp_path)

    async def scenario():
        await store.set("books", "b1", {"title": "One"})
        await store.set("books", "b1", {"views": 3}, merge=True)
        return await store.query("books")

    snapshots = asyncio.run(scenario())

    assert [(snapshot.id, snapshot.data) for snapshot in snapshots] == [
        ("b1", {"title": "One", "views": 3})
    ]
    assert sorted(path.name for path in (tmp_path / "books").iterdir()) == ["b1.json"]


def test_json_store_unserializable_value_raises_store_error(tmp_path) -> None:
    store = JsonDocumentStore(tmp_path)

    with pytest.raises(StoreError):
        asyncio.run(store.set("books", "b1", {"blob": object()}))

    assert list((tmp_path / "books").iterdir()) == []
