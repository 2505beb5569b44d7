from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from .models import Book, ReadingProgress
from .stores import SERVER_TIMESTAMP, DocumentStore, join_path

logger = logging.getLogger(__name__)

LOCAL_HISTORY_COLLECTION = "history"
REMOTE_HISTORY_LIMIT = 48

# Numbers below this are epoch seconds, at or above it epoch milliseconds.
_MILLIS_THRESHOLD = 100_000_000_000


def user_history_collection(reader_id: str) -> str:
    return join_path("users", reader_id, "history")


def to_epoch_millis(value: Any) -> int:
    """
    Normalize server-assigned and client-assigned timestamps to epoch millis.

    Accepts aware/naive datetimes (naive is UTC), ISO-8601 strings, epoch
    seconds or millis, and ``{"seconds": ..., "nanoseconds": ...}`` mappings.
    Unknown values sort as the oldest possible time (0).
    """
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, (int, float)):
        if abs(value) >= _MILLIS_THRESHOLD:
            return int(value)
        return int(value * 1000)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            return to_epoch_millis(float(text))
        except ValueError:
            pass
        try:
            return to_epoch_millis(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            logger.debug("Unparseable timestamp %r", value)
            return 0
    if isinstance(value, Mapping):
        seconds = value.get("seconds")
        nanos = value.get("nanoseconds") or 0
        if isinstance(seconds, (int, float)) and isinstance(nanos, (int, float)):
            return int(seconds * 1000 + nanos // 1_000_000)
        return 0
    timestamp = getattr(value, "timestamp", None)
    if callable(timestamp):
        return int(timestamp() * 1000)
    return 0


def _newest_per_book(entries: Iterable[ReadingProgress]) -> list[ReadingProgress]:
    newest: dict[str, ReadingProgress] = {}
    order: list[str] = []
    for entry in entries:
        if not entry.book_id:
            continue
        current = newest.get(entry.book_id)
        if current is None:
            order.append(entry.book_id)
            newest[entry.book_id] = entry
        elif to_epoch_millis(entry.last_read_at) > to_epoch_millis(current.last_read_at):
            newest[entry.book_id] = entry
    return [newest[book_id] for book_id in order]


def merge_history(
    remote: Iterable[ReadingProgress],
    local: Iterable[ReadingProgress],
) -> list[ReadingProgress]:
    """
    Merge remote and device-local progress into one timeline, newest first.

    A remote entry fully supersedes a local entry for the same book. Equal
    timestamps order remote before local, then by input order.
    """
    remote_entries = [replace(entry, is_remote=True) for entry in _newest_per_book(remote)]
    remote_ids = {entry.book_id for entry in remote_entries}
    local_entries = [
        replace(entry, is_remote=False)
        for entry in _newest_per_book(local)
        if entry.book_id not in remote_ids
    ]
    ranked = [(entry, 0) for entry in remote_entries] + [(entry, 1) for entry in local_entries]
    ranked.sort(key=lambda item: (-to_epoch_millis(item[0].last_read_at), item[1]))
    return [entry for entry, _ in ranked]


class ProgressRecorder:
    """Upserts one progress record per (reader or device, book) on each chapter view."""

    def __init__(
        self,
        device: DocumentStore,
        remote: DocumentStore | None = None,
        reader_id: str | None = None,
    ) -> None:
        self.device = device
        self.remote = remote
        self.reader_id = reader_id

    @property
    def signed_in(self) -> bool:
        return bool(self.reader_id) and self.remote is not None

    async def record(self, book: Book, chapter_number: int) -> ReadingProgress:
        progress = ReadingProgress(
            book_id=book.id,
            last_read_chapter=chapter_number,
            last_read_at=SERVER_TIMESTAMP,
            is_remote=self.signed_in,
            title=book.title,
            author=book.author,
            cover_ref=book.cover_ref,
            genres=list(book.genres),
        )
        payload = progress.as_payload()
        remote, reader_id = self.remote, self.reader_id
        if remote is not None and reader_id:
            await remote.set(user_history_collection(reader_id), book.id, payload, merge=True)
        else:
            await self.device.set(LOCAL_HISTORY_COLLECTION, book.id, payload, merge=True)
        return replace(progress, last_read_at=datetime.now(timezone.utc))


async def load_local_history(device: DocumentStore) -> list[ReadingProgress]:
    snapshots = await device.query(LOCAL_HISTORY_COLLECTION)
    return [
        ReadingProgress.from_payload(snapshot.data, is_remote=False, doc_id=snapshot.id)
        for snapshot in snapshots
    ]


async def load_remote_history(
    remote: DocumentStore, reader_id: str, limit: int = REMOTE_HISTORY_LIMIT
) -> list[ReadingProgress]:
    snapshots = await remote.query(
        user_history_collection(reader_id),
        order_by="last_read_at",
        descending=True,
        limit=limit,
    )
    return [
        ReadingProgress.from_payload(snapshot.data, is_remote=True, doc_id=snapshot.id)
        for snapshot in snapshots
    ]


async def load_history(
    device: DocumentStore,
    remote: DocumentStore | None = None,
    reader_id: str | None = None,
    *,
    limit: int = REMOTE_HISTORY_LIMIT,
) -> list[ReadingProgress]:
    local_entries = await load_local_history(device)
    remote_entries: list[ReadingProgress] = []
    if remote is not None and reader_id:
        remote_entries = await load_remote_history(remote, reader_id, limit)
    return merge_history(remote_entries, local_entries)


async def remove_local_entry(device: DocumentStore, book_id: str) -> None:
    await device.delete(LOCAL_HISTORY_COLLECTION, book_id)


async def clear_local_history(device: DocumentStore) -> int:
    snapshots = await device.query(LOCAL_HISTORY_COLLECTION)
    for snapshot in snapshots:
        await device.delete(LOCAL_HISTORY_COLLECTION, snapshot.id)
    return len(snapshots)


__all__ = [
    "LOCAL_HISTORY_COLLECTION",
    "ProgressRecorder",
    "REMOTE_HISTORY_LIMIT",
    "clear_local_history",
    "load_history",
    "load_local_history",
    "load_remote_history",
    "merge_history",
    "remove_local_entry",
    "to_epoch_millis",
    "user_history_collection",
]
