from __future__ import annotations

import asyncio

import pytest

from conftest import FlakyDocumentStore, YieldingDocumentStore, png_bytes
from lounge.assets import normalize_cover
from lounge.errors import AuthorizationViolation, BookWriteError, PartialWriteError
from lounge.models import Book, Chapter
from lounge.persistence import (
    CloudPersistence,
    LocalPersistence,
    PersistenceRouter,
    RoutingDecision,
    route_upload,
)
from lounge.stores import Increment, MemoryBlobStore, MemoryDocumentStore


def _chapters(book_id: str, *numbers: int) -> list[Chapter]:
    return [Chapter(book_id, number, f"<p>Chapter {number} body</p>") for number in numbers]


def _book(book_id: str = "a_writer_test_saga") -> Book:
    return Book(id=book_id, title="Test Saga", author="A. Writer", genres=["fantasy"])


@pytest.mark.parametrize(
    ("tier", "preference", "expected"),
    [
        ("unapproved", "cloud", "local"),
        (None, "cloud", "local"),
        ("superuser", "cloud", "local"),
        ("approved-contributor", "cloud", "cloud"),
        ("admin", "remote", "cloud"),
        ("admin", "local", "local"),
        ("approved-contributor", None, "local"),
    ],
)
def test_route_upload(tier, preference, expected) -> None:
    assert route_upload(tier, preference).target == expected


def test_unapproved_cloud_request_explains_fallback() -> None:
    decision = route_upload("unapproved", "cloud")

    assert decision.reason == "caller is not approved for cloud publishing"


def test_router_without_cloud_store_stays_local() -> None:
    router = PersistenceRouter(LocalPersistence(MemoryDocumentStore()))

    decision = router.decide("admin", "cloud")

    assert decision.target == "local"


def test_local_persist_writes_book_and_chapters() -> None:
    store = MemoryDocumentStore()
    local = LocalPersistence(store)

    result = asyncio.run(local.persist(_book(), _chapters("a_writer_test_saga", 1, 2)))

    assert result.saved == [1, 2]
    book = asyncio.run(store.get("books", "a_writer_test_saga"))
    assert book["total_chapters"] == 2
    assert book["storage_target"] == "local"
    assert book["title_lower"] == "test saga"
    chapter = asyncio.run(store.get("books/a_writer_test_saga/chapters", "2"))
    assert chapter["chapter_number"] == 2
    assert chapter["title"] == "Chapter 2"


def test_repeat_local_upload_merges_and_never_shrinks_total() -> None:
    store = MemoryDocumentStore()
    local = LocalPersistence(store)

    async def scenario():
        await local.persist(_book(), _chapters("a_writer_test_saga", 1, 2, 3))
        await store.set("books", "a_writer_test_saga", {"views": 9}, merge=True)
        first = await store.get("books", "a_writer_test_saga")
        await local.persist(_book(), _chapters("a_writer_test_saga", 2))
        second = await store.get("books", "a_writer_test_saga")
        return first, second

    first, second = asyncio.run(scenario())

    assert second["total_chapters"] == 3
    assert second["views"] == 9
    assert second["created_at"] == first["created_at"]


def test_chapter_failures_raise_partial_write_error_and_retry() -> None:
    store = FlakyDocumentStore()
    store.fail_sets.add(("books/b1/chapters", "2"))
    router = PersistenceRouter(LocalPersistence(store))
    decision = RoutingDecision("local", "local storage requested")
    book = _book("b1")
    chapters = _chapters("b1", 1, 2, 3)

    with pytest.raises(PartialWriteError) as excinfo:
        asyncio.run(router.persist(decision, book, chapters, tier="unapproved"))

    error = excinfo.value
    assert error.failed == [2]
    assert error.saved == [1, 3]
    assert "Some chapters were saved (2), 1 failed: 2" == error.user_message
    assert asyncio.run(store.get("books", "b1")) is not None

    store.fail_sets.clear()
    retried = asyncio.run(router.retry_failed(error, decision, book, chapters, tier="unapproved"))

    assert retried.saved == [2]
    assert asyncio.run(store.get("books/b1/chapters", "2"))["chapter_number"] == 2
    assert asyncio.run(store.get("books", "b1"))["total_chapters"] == 3


def test_book_write_failure_writes_no_chapters() -> None:
    store = FlakyDocumentStore()
    store.fail_sets.add(("books", "b1"))

    with pytest.raises(BookWriteError):
        asyncio.run(LocalPersistence(store).persist(_book("b1"), _chapters("b1", 1)))

    assert asyncio.run(store.query("books/b1/chapters")) == []


def test_cloud_writer_rejects_unapproved_callers() -> None:
    store = MemoryDocumentStore()
    cloud = CloudPersistence(store, MemoryBlobStore())

    with pytest.raises(AuthorizationViolation):
        asyncio.run(cloud.persist(_book(), _chapters("a_writer_test_saga", 1), tier="unapproved"))

    assert store.calls == []


def test_router_rejects_forged_cloud_decision() -> None:
    store = MemoryDocumentStore()
    router = PersistenceRouter(LocalPersistence(MemoryDocumentStore()), CloudPersistence(store))
    forged = RoutingDecision("cloud", "client says so")

    with pytest.raises(AuthorizationViolation):
        asyncio.run(router.persist(forged, _book(), _chapters("x", 1), tier="unapproved"))

    assert store.calls == []


def test_cloud_persist_writes_metadata_cover_and_usage() -> None:
    store = MemoryDocumentStore()
    blobs = MemoryBlobStore()
    cloud = CloudPersistence(store, blobs, clock=lambda: 1_700_000_000.0)
    cover = normalize_cover(png_bytes(1600, 1600), "cover.png", "image/png")
    book = _book("saga_1")

    result = asyncio.run(
        cloud.persist(book, _chapters("saga_1", 1, 2), cover, tier="approved-contributor")
    )

    assert result.cover_ref == "memory://bookCovers/saga_1/1700000000000_cover.jpg"
    stored = asyncio.run(store.get("books", "saga_1"))
    assert stored["storage_target"] == "cloud"
    assert stored["cover_size"] == cover.size
    info = asyncio.run(store.get("books/saga_1/metadata", "info"))
    assert info["book_title"] == "Test Saga"
    assert info["total_chapters"] == 2
    usage = asyncio.run(store.get("stats", "storageUsage"))
    assert usage["storage_bytes_used"] == cover.size


def test_cover_upload_failure_does_not_abort_persist() -> None:
    store = MemoryDocumentStore()
    cloud = CloudPersistence(store, MemoryBlobStore(capacity_bytes=1))
    cover = normalize_cover(png_bytes(), "cover.png", "image/png")

    result = asyncio.run(cloud.persist(_book("s"), _chapters("s", 1), cover, tier="admin"))

    assert result.cover_ref is None
    assert result.saved == [1]
    assert asyncio.run(store.get("stats", "storageUsage")) is None


def test_local_persist_keeps_existing_cover() -> None:
    store = MemoryDocumentStore()
    blobs = MemoryBlobStore()
    local = LocalPersistence(store, blobs)
    cover = normalize_cover(png_bytes(), "cover.png", "image/png")

    async def scenario():
        first = await local.persist(_book("b1"), _chapters("b1", 1), cover)
        second = await local.persist(_book("b1"), _chapters("b1", 2), cover)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.cover_ref is not None
    assert second.cover_ref == first.cover_ref
    assert len(blobs.blobs) == 1


@pytest.mark.parametrize("target", ["local", "cloud"])
def test_repeat_chapter_write_keeps_one_record_with_latest_content(target) -> None:
    store = MemoryDocumentStore()
    if target == "local":
        writer = LocalPersistence(store)
    else:
        writer = CloudPersistence(store, MemoryBlobStore())
    first = [Chapter("saga", 4, "<p>draft</p>")]
    second = [Chapter("saga", 4, "<p>final</p>")]

    async def scenario():
        await writer.persist(_book("saga"), first, tier="admin")
        await writer.persist(_book("saga"), second, tier="admin")
        return await store.query("books/saga/chapters"), await store.query("books")

    chapters, books = asyncio.run(scenario())

    assert [snapshot.id for snapshot in chapters] == ["4"]
    assert chapters[0].data["content"] == "<p>final</p>"
    assert [snapshot.id for snapshot in books] == ["saga"]


def test_concurrent_cloud_uploads_count_every_cover() -> None:
    store = YieldingDocumentStore()
    cloud = CloudPersistence(store, MemoryBlobStore())
    cover = normalize_cover(png_bytes(), "cover.png", "image/png")

    async def scenario():
        await asyncio.gather(
            cloud.persist(_book("one"), _chapters("one", 1), cover, tier="admin"),
            cloud.persist(_book("two"), _chapters("two", 1), cover, tier="admin"),
        )
        return await store.get("stats", "storageUsage")

    usage = asyncio.run(scenario())

    assert usage["storage_bytes_used"] == 2 * cover.size


def test_repeat_upload_keeps_views_counted_during_the_write() -> None:
    store = YieldingDocumentStore()
    local = LocalPersistence(store)

    async def scenario():
        await local.persist(_book("saga"), _chapters("saga", 1))
        await asyncio.gather(
            local.persist(_book("saga"), _chapters("saga", 2)),
            store.set("books", "saga", {"views": Increment(5)}, merge=True),
        )
        return await store.get("books", "saga")

    assert asyncio.run(scenario())["views"] == 5
