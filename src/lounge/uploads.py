from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Mapping
from uuid import uuid4

from .assets import normalize_cover
from .core import DEFAULT_AUTHOR, extract_manuscript
from .errors import LoungeError, PartialWriteError
from .identity import resolve_book_id
from .models import Book, Chapter
from .persistence import PersistenceRouter, RoutingDecision, build_chapters

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Mapping[str, object]], None]


@dataclass
class ManuscriptUpload:
    title: str = ""
    author: str = ""
    genres: list[str] = field(default_factory=list)
    filename: str | None = None
    data: bytes | None = None
    path: Path | None = None
    text: str | None = None
    chapter_number: int | None = None
    chapter_title: str | None = None
    cover: bytes | None = None
    cover_filename: str | None = None
    cover_content_type: str | None = None
    tier: str | None = None
    preference: str | None = "local"
    owner_id: str | None = None


@dataclass
class IngestResult:
    book: Book
    decision: RoutingDecision
    chapters: list[Chapter]
    saved: list[int]

    @property
    def message(self) -> str:
        where = "cloud library" if self.decision.target == "cloud" else "private library"
        return f"Added {len(self.saved)} chapter(s) of {self.book.title!r} to your {where}."


class IngestPipeline:
    """Extract → resolve identity and normalize cover → route and persist."""

    def __init__(
        self,
        router: PersistenceRouter,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.router = router
        self.clock = clock

    async def ingest(
        self,
        upload: ManuscriptUpload,
        progress: ProgressCallback | None = None,
    ) -> IngestResult:
        def _emit(event: str, **extra: object) -> None:
            if progress is not None:
                progress({"event": event, **extra})

        _emit("extract")
        manuscript = extract_manuscript(
            data=upload.data,
            path=upload.path,
            filename=upload.filename,
            text=upload.text,
            chapter_number=upload.chapter_number,
            chapter_title=upload.chapter_title,
        )
        title = (manuscript.title or upload.title or "").strip()
        author = (manuscript.author or upload.author or "").strip() or DEFAULT_AUTHOR
        decision = self.router.decide(upload.tier, upload.preference)
        book_id = resolve_book_id(author, title, decision.target, clock=self.clock)
        _emit("resolved", book_id=book_id, target=decision.target, reason=decision.reason)

        cover_bytes = upload.cover
        cover_name = upload.cover_filename or "cover"
        cover_type = upload.cover_content_type
        if cover_bytes is None and manuscript.cover is not None:
            cover_bytes = manuscript.cover.data
            cover_name = Path(manuscript.cover.path).name
            cover_type = manuscript.cover.media_type
        cover = normalize_cover(cover_bytes, cover_name, cover_type)

        book = Book(
            id=book_id,
            title=title or book_id,
            author=author,
            genres=list(upload.genres),
            owner_id=upload.owner_id,
            storage_target=decision.target,
        )
        chapters = build_chapters(book_id, manuscript.chapters)
        _emit("writing", total=len(chapters), title=book.title)
        result = await self.router.persist(decision, book, chapters, cover, tier=upload.tier)
        _emit("complete", total=len(chapters), saved=len(result.saved))
        return IngestResult(book=result.book, decision=decision, chapters=chapters, saved=result.saved)


def _format_progress_label(label: str, event: Mapping[str, object]) -> str:
    parts = [label]
    event_type = event.get("event")
    if event_type == "resolved":
        parts.append(f"→ {event.get('target')}")
    elif event_type == "writing":
        total = event.get("total")
        parts.append(f"writing {total} chapter(s)…" if isinstance(total, int) else "writing…")
    elif isinstance(event_type, str):
        parts.append(event_type)
    return " · ".join(parts)


class UploadJob:
    def __init__(self, upload: ManuscriptUpload) -> None:
        self.id = uuid4().hex
        self.upload = upload
        self.label = upload.filename or upload.title or "pasted text"
        self.status = "pending"
        self.message: str | None = "Waiting to start"
        self.error: str | None = None
        self.progress_label: str | None = None
        self.progress_event: str | None = None
        self.book_id: str | None = None
        self.target: str | None = None
        self.failed_chapters: list[int] = []
        self.result: IngestResult | None = None
        self.created_at = datetime.now(timezone.utc)
        self.updated_at = self.created_at

    def _touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)

    def set_status(self, status: str, message: str | None = None) -> None:
        self.status = status
        if message is not None:
            self.message = message
        self._touch()

    def set_error(self, message: str) -> None:
        self.status = "error"
        self.error = message
        self.message = message
        self._touch()

    def set_partial(self, exc: PartialWriteError) -> None:
        self.status = "partial"
        self.book_id = exc.book_id
        self.failed_chapters = list(exc.failed)
        self.error = str(exc)
        self.message = exc.user_message
        self._touch()

    def update_progress(self, event: Mapping[str, object]) -> None:
        event_type = event.get("event")
        self.progress_event = event_type if isinstance(event_type, str) else None
        self.progress_label = _format_progress_label(self.label, event)
        book_id = event.get("book_id")
        if isinstance(book_id, str):
            self.book_id = book_id
        target = event.get("target")
        if isinstance(target, str):
            self.target = target
        self.message = self.progress_label
        self._touch()

    def mark_success(self, result: IngestResult) -> None:
        self.status = "success"
        self.result = result
        self.book_id = result.book.id
        self.target = result.decision.target
        self.message = result.message
        self.progress_event = "complete"
        self.progress_label = None
        self._touch()

    def to_payload(self) -> dict[str, object]:
        progress_payload: dict[str, object] | None = None
        if self.progress_label or self.progress_event:
            progress_payload = {"label": self.progress_label, "event": self.progress_event}
        return {
            "id": self.id,
            "filename": self.upload.filename,
            "status": self.status,
            "message": self.message,
            "error": self.error,
            "progress": progress_payload,
            "book_id": self.book_id,
            "target": self.target,
            "failed_chapters": list(self.failed_chapters),
            "created": self.created_at.isoformat(),
            "updated": self.updated_at.isoformat(),
        }


class UploadManager:
    def __init__(self, pipeline: IngestPipeline) -> None:
        self.pipeline = pipeline
        self.jobs: dict[str, UploadJob] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def enqueue(self, job: UploadJob) -> UploadJob:
        self.jobs[job.id] = job
        self._tasks[job.id] = asyncio.get_running_loop().create_task(self.run_job(job))
        return job

    async def wait(self, job_id: str) -> UploadJob:
        task = self._tasks.get(job_id)
        if task is not None:
            await task
        return self.jobs[job_id]

    def list_jobs(self) -> list[dict[str, object]]:
        snapshot = sorted(self.jobs.values(), key=lambda job: job.updated_at, reverse=True)
        return [job.to_payload() for job in snapshot]

    async def shutdown(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def run_job(self, job: UploadJob) -> None:
        job.set_status("running", "Preparing upload…")
        try:
            result = await self.pipeline.ingest(job.upload, progress=job.update_progress)
        except PartialWriteError as exc:
            logger.warning("Upload %s partially saved: %s", job.id, exc)
            job.set_partial(exc)
        except LoungeError as exc:
            logger.warning("Upload %s failed: %s", job.id, exc)
            job.set_error(exc.user_message)
        except Exception as exc:
            logger.exception("Upload %s crashed", job.id)
            job.set_error(f"Nothing was saved: {exc.__class__.__name__}: {exc}")
        else:
            job.mark_success(result)


__all__ = [
    "IngestPipeline",
    "IngestResult",
    "ManuscriptUpload",
    "UploadJob",
    "UploadManager",
]
