from __future__ import annotations

import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Any, Callable
from uuid import uuid4

from fastapi import (
    BackgroundTasks,
    Body,
    Cookie,
    FastAPI,
    File,
    Form,
    Header,
    HTTPException,
    Query,
    UploadFile,
)
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .backend import LoungeBackend, build_backend
from .config import LoungeConfig
from .delivery import ChapterDeliveryCache
from .errors import (
    AssetNormalizationError,
    AuthorizationViolation,
    ChapterNotFoundError,
    EmptyManuscriptError,
    LoungeError,
    ParseError,
    PartialWriteError,
)
from .history import clear_local_history, load_history, remove_local_entry, to_epoch_millis
from .library import delete_book, list_books, sort_listings, update_cover, update_metadata
from .models import Book, ReadingProgress
from .uploads import ManuscriptUpload, UploadJob, UploadManager

logger = logging.getLogger(__name__)

Authorizer = Callable[[str | None], str]

SESSION_COOKIE = "lounge_session"
MAX_READER_SESSIONS = 256


def _error_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, PartialWriteError):
        return JSONResponse(
            {
                "error": exc.user_message,
                "book_id": exc.book_id,
                "saved": exc.saved,
                "failed": exc.failed,
            },
            status_code=207,
        )
    if isinstance(exc, (ParseError, EmptyManuscriptError, AssetNormalizationError, ValueError)):
        status = 400
    elif isinstance(exc, AuthorizationViolation):
        status = 403
    elif isinstance(exc, ChapterNotFoundError):
        status = 404
    else:
        status = 500
    message = exc.user_message if isinstance(exc, LoungeError) else f"Nothing was saved: {exc}"
    return JSONResponse({"error": message}, status_code=status)


def _book_payload(book: Book) -> dict[str, Any]:
    return jsonable_encoder(book.as_payload())


def _progress_payload(entry: ReadingProgress) -> dict[str, Any]:
    payload = jsonable_encoder(entry.as_payload())
    payload["last_read_ms"] = to_epoch_millis(entry.last_read_at)
    return payload


def _split_genres(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [genre.strip() for genre in raw.split(",") if genre.strip()]


def create_app(
    config: LoungeConfig,
    *,
    backend: LoungeBackend | None = None,
    authorizer: Authorizer | None = None,
) -> FastAPI:
    """
    Build the reader/publisher API.

    The caller's tier is always resolved server-side from the reader header
    through ``authorizer`` (``config.tier_for`` by default); clients cannot
    claim a tier.
    """
    if backend is None:
        config.root.mkdir(parents=True, exist_ok=True)
        backend = build_backend(config)
    resolve_tier = authorizer or config.tier_for

    uploads = UploadManager(backend.pipeline)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await uploads.shutdown()

    app = FastAPI(title="lounge", lifespan=lifespan)
    app.state.config = config
    app.state.backend = backend
    app.state.uploads = uploads
    sessions: OrderedDict[str, tuple[str | None, ChapterDeliveryCache]] = OrderedDict()
    app.state.sessions = sessions

    def _session(
        session_id: str | None, reader_id: str | None
    ) -> tuple[str, ChapterDeliveryCache, bool]:
        """Return the cache of one client session, issuing a session id when missing."""
        issued = not session_id
        key = session_id or uuid4().hex
        entry = sessions.get(key)
        if entry is None or entry[0] != reader_id:
            entry = (reader_id, backend.reader_session(reader_id))
            sessions[key] = entry
        sessions.move_to_end(key)
        while len(sessions) > MAX_READER_SESSIONS:
            evicted, _ = sessions.popitem(last=False)
            logger.debug("Dropped idle reader session %s", evicted)
        return key, entry[1], issued

    def _with_session(response: JSONResponse, session_id: str, issued: bool) -> JSONResponse:
        if issued:
            response.set_cookie(SESSION_COOKIE, session_id, httponly=True, samesite="lax")
        return response

    @app.post("/api/ingest")
    async def api_ingest(
        payload: dict[str, Any] = Body(...),
        x_lounge_reader: str | None = Header(default=None),
    ) -> JSONResponse:
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload.")
        chapter_number = payload.get("chapter_number")
        if chapter_number is not None and not isinstance(chapter_number, int):
            raise HTTPException(status_code=400, detail="chapter_number must be an integer.")
        genres = payload.get("genres") or []
        if isinstance(genres, str):
            genres = _split_genres(genres)
        upload = ManuscriptUpload(
            title=str(payload.get("title") or ""),
            author=str(payload.get("author") or ""),
            genres=[str(genre) for genre in genres],
            text=payload.get("text") if isinstance(payload.get("text"), str) else None,
            chapter_number=chapter_number,
            chapter_title=payload.get("chapter_title") or None,
            tier=resolve_tier(x_lounge_reader),
            preference=str(payload.get("storage") or "local"),
            owner_id=x_lounge_reader,
        )
        try:
            result = await backend.pipeline.ingest(upload)
        except (LoungeError, ValueError) as exc:
            logger.warning("Ingest failed: %s", exc)
            return _error_response(exc)
        return JSONResponse(
            {
                "book": _book_payload(result.book),
                "target": result.decision.target,
                "reason": result.decision.reason,
                "saved": result.saved,
                "message": result.message,
            }
        )

    @app.post("/api/uploads")
    async def api_upload(
        file: UploadFile | None = File(default=None),
        cover: UploadFile | None = File(default=None),
        title: str = Form(default=""),
        author: str = Form(default=""),
        genres: str = Form(default=""),
        text: str | None = Form(default=None),
        chapter_number: int | None = Form(default=None),
        chapter_title: str | None = Form(default=None),
        storage: str = Form(default="local"),
        x_lounge_reader: str | None = Header(default=None),
    ) -> JSONResponse:
        if file is None and not (text and text.strip()):
            raise HTTPException(status_code=400, detail="Upload a manuscript file or paste text.")
        upload = ManuscriptUpload(
            title=title,
            author=author,
            genres=_split_genres(genres),
            filename=file.filename if file is not None else None,
            data=await file.read() if file is not None else None,
            text=text,
            chapter_number=chapter_number,
            chapter_title=chapter_title,
            cover=await cover.read() if cover is not None else None,
            cover_filename=cover.filename if cover is not None else None,
            cover_content_type=cover.content_type if cover is not None else None,
            tier=resolve_tier(x_lounge_reader),
            preference=storage,
            owner_id=x_lounge_reader,
        )
        job = uploads.enqueue(UploadJob(upload))
        return JSONResponse(job.to_payload(), status_code=202)

    @app.get("/api/uploads")
    def api_uploads() -> JSONResponse:
        return JSONResponse({"jobs": uploads.list_jobs()})

    @app.get("/api/books")
    async def api_books(
        sort: str = Query(default="author"),
        genre: str | None = Query(default=None),
    ) -> JSONResponse:
        try:
            listings = await list_books(backend.device, sort, genre=genre)
            if backend.cloud is not None:
                listings = sort_listings(
                    listings + await list_books(backend.cloud, sort, genre=genre), sort
                )
        except LoungeError as exc:
            logger.warning("Book listing failed: %s", exc)
            return _error_response(exc)
        return JSONResponse({"books": [_book_payload(listing.book) for listing in listings]})

    @app.get("/api/books/{book_id}/chapters/{chapter_number}")
    async def api_chapter(
        book_id: str,
        chapter_number: int,
        background: BackgroundTasks,
        x_lounge_reader: str | None = Header(default=None),
        lounge_session: str | None = Cookie(default=None),
    ) -> JSONResponse:
        session_id, cache, issued = _session(lounge_session, x_lounge_reader)
        try:
            chapter = await cache.get(book_id, chapter_number)
            next_number = await cache.next_chapter_number(book_id, chapter.chapter_number)
            previous_number = await cache.previous_chapter_number(book_id, chapter.chapter_number)
        except ChapterNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except LoungeError as exc:
            logger.warning("Chapter %d of %s unavailable: %s", chapter_number, book_id, exc)
            return _error_response(exc)
        window = config.prefetch_window
        background.add_task(cache.prefetch_range, book_id, chapter.chapter_number + 1, window)
        response = JSONResponse(
            {
                "book": _book_payload(cache.book) if cache.book is not None else None,
                "chapter": {
                    "chapter_number": chapter.chapter_number,
                    "title": chapter.display_title,
                    "content": chapter.content,
                },
                "next": next_number,
                "previous": previous_number,
                "preloaded": cache.preloaded_count(chapter.chapter_number + 1, window),
                "session": session_id,
            }
        )
        return _with_session(response, session_id, issued)

    @app.post("/api/books/{book_id}/prefetch")
    async def api_prefetch(
        book_id: str,
        start: int = Query(default=1),
        count: int = Query(default=10),
        x_lounge_reader: str | None = Header(default=None),
        lounge_session: str | None = Cookie(default=None),
    ) -> JSONResponse:
        session_id, cache, issued = _session(lounge_session, x_lounge_reader)
        result = await cache.prefetch_range(book_id, start, count)
        response = JSONResponse(
            {
                "requested": result.requested,
                "loaded": result.loaded,
                "already_cached": result.already_cached,
                "missing": result.missing,
                "failed": result.failed,
                "discarded": result.discarded,
                "session": session_id,
            }
        )
        return _with_session(response, session_id, issued)

    @app.get("/api/history")
    async def api_history(x_lounge_reader: str | None = Header(default=None)) -> JSONResponse:
        try:
            entries = await load_history(backend.device, backend.cloud, x_lounge_reader)
        except LoungeError as exc:
            logger.warning("Reading history unavailable: %s", exc)
            return _error_response(exc)
        return JSONResponse({"history": [_progress_payload(entry) for entry in entries]})

    @app.delete("/api/history/{book_id}")
    async def api_history_remove(book_id: str) -> JSONResponse:
        await remove_local_entry(backend.device, book_id)
        return JSONResponse({"removed": book_id})

    @app.delete("/api/history")
    async def api_history_clear() -> JSONResponse:
        removed = await clear_local_history(backend.device)
        return JSONResponse({"removed": removed})

    def _admin_store(book_store: str) -> Any:
        if book_store == "cloud":
            if backend.cloud is None:
                raise HTTPException(status_code=404, detail="Cloud storage is not configured.")
            return backend.cloud, backend.cloud_blobs
        return backend.device, backend.device_blobs

    @app.delete("/api/books/{book_id}")
    async def api_delete_book(
        book_id: str,
        store: str = Query(default="cloud"),
        x_lounge_reader: str | None = Header(default=None),
    ) -> JSONResponse:
        documents, _ = _admin_store(store)
        try:
            removed = await delete_book(documents, book_id, tier=resolve_tier(x_lounge_reader))
        except LoungeError as exc:
            return _error_response(exc)
        return JSONResponse({"deleted": True, "book": book_id, "chapters": removed})

    @app.patch("/api/books/{book_id}")
    async def api_update_book(
        book_id: str,
        payload: dict[str, Any] = Body(...),
        store: str = Query(default="cloud"),
        x_lounge_reader: str | None = Header(default=None),
    ) -> JSONResponse:
        documents, _ = _admin_store(store)
        genres = payload.get("genres")
        if isinstance(genres, str):
            genres = _split_genres(genres)
        try:
            book = await update_metadata(
                documents,
                book_id,
                tier=resolve_tier(x_lounge_reader),
                title=payload.get("title"),
                author=payload.get("author"),
                genres=genres,
            )
        except LoungeError as exc:
            return _error_response(exc)
        return JSONResponse({"book": _book_payload(book)})

    @app.post("/api/books/{book_id}/cover")
    async def api_update_cover(
        book_id: str,
        cover: UploadFile = File(...),
        store: str = Query(default="cloud"),
        x_lounge_reader: str | None = Header(default=None),
    ) -> JSONResponse:
        documents, blobs = _admin_store(store)
        data = await cover.read()
        try:
            book = await update_cover(
                documents,
                blobs,
                book_id,
                data,
                cover.filename or "cover",
                cover.content_type,
                tier=resolve_tier(x_lounge_reader),
            )
        except LoungeError as exc:
            return _error_response(exc)
        return JSONResponse({"book": _book_payload(book)})

    return app


__all__ = ["create_app"]
