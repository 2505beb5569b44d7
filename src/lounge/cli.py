from __future__ import annotations

import argparse
import asyncio
import socket
import sys
import tomllib
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path

import uvicorn
from bs4 import BeautifulSoup
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from .backend import LoungeBackend, build_backend
from .config import LoungeConfig, load_config
from .errors import LoungeError, PartialWriteError
from .history import clear_local_history, load_history, remove_local_entry, to_epoch_millis
from .library import SORT_MODES, list_books, sort_listings
from .logging_utils import build_uvicorn_log_config, configure_logging
from .uploads import ManuscriptUpload
from .web import create_app

COMMANDS = ("ingest", "read", "history", "books", "web")


def _read_local_version() -> str | None:
    pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    try:
        with pyproject_path.open("rb") as fh:
            data = tomllib.load(fh)
    except (FileNotFoundError, tomllib.TOMLDecodeError):
        return None
    return data.get("project", {}).get("version")


try:
    __version__ = metadata.version("lounge")
except metadata.PackageNotFoundError:
    __version__ = _read_local_version() or "0.0.0+unknown"


def _add_common_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-v", "--version", action="version", version=f"lounge {__version__}")
    parser.add_argument(
        "--root",
        help="Library root holding the device and cloud stores (default: $LOUNGE_ROOT or ~/.lounge).",
    )
    parser.add_argument(
        "--reader",
        help="Signed-in reader id. Without it, progress stays on this device.",
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging.")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="lounge",
        description="Manuscript ingestion, chapter reading and reading history.",
    )
    ap.add_argument("-v", "--version", action="version", version=f"lounge {__version__}")
    ap.add_argument("command", choices=COMMANDS, help="Sub-command to run.")
    return ap


def build_ingest_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="lounge ingest", description="Add an EPUB or text manuscript.")
    _add_common_flags(ap)
    ap.add_argument("paths", nargs="*", help="EPUB or .txt files, or directories of EPUBs.")
    ap.add_argument("--text", help="Paste a single chapter as text instead of a file.")
    ap.add_argument("--title", default="", help="Book title (EPUB metadata wins when present).")
    ap.add_argument("--author", default="", help="Book author (default: Anonymous).")
    ap.add_argument("--genre", action="append", default=[], help="Genre tag; repeatable.")
    ap.add_argument("--chapter", type=int, help="Chapter number for a text upload (default: 1).")
    ap.add_argument("--chapter-title", help="Chapter title for a text upload.")
    ap.add_argument("--cover", help="Cover image file.")
    ap.add_argument(
        "--storage",
        choices=["local", "cloud"],
        default="local",
        help="Requested destination; unapproved readers always stay local (default: local).",
    )
    return ap


def build_read_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="lounge read", description="Print a chapter.")
    _add_common_flags(ap)
    ap.add_argument("book_id", help="Book identifier.")
    ap.add_argument("chapter", nargs="?", type=int, default=1, help="Chapter number (default: 1).")
    ap.add_argument("--html", action="store_true", help="Print stored HTML instead of plain text.")
    return ap


def build_history_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="lounge history", description="Show reading history.")
    _add_common_flags(ap)
    ap.add_argument("--remove", metavar="BOOK_ID", help="Forget device progress for one book.")
    ap.add_argument("--clear", action="store_true", help="Forget all device progress.")
    return ap


def build_books_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="lounge books", description="List books.")
    _add_common_flags(ap)
    ap.add_argument("--sort", choices=SORT_MODES, default="author", help="Sort order.")
    ap.add_argument("--genre", help="Only books tagged with this genre.")
    return ap


def build_web_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="lounge web", description="Serve the reader API.")
    _add_common_flags(ap)
    ap.add_argument("--host", help="Host interface (default: config or 0.0.0.0).")
    ap.add_argument("--port", type=int, help="Port (default: config or 2047).")
    return ap


def _prepare(args: argparse.Namespace) -> tuple[LoungeConfig, LoungeBackend, Console]:
    configure_logging(bool(args.debug))
    config = load_config(args.root)
    if args.reader:
        config.reader_id = args.reader
    config.root.mkdir(parents=True, exist_ok=True)
    return config, build_backend(config), Console()


def _collect_sources(paths: list[str]) -> list[Path]:
    sources: list[Path] = []
    for raw in paths:
        path = Path(raw).expanduser()
        if path.is_dir():
            sources.extend(sorted(p for p in path.iterdir() if p.suffix.lower() == ".epub"))
        elif path.exists():
            sources.append(path)
        else:
            raise FileNotFoundError(f"Input path not found: {path}")
    return sources


def _run_ingest(args: argparse.Namespace) -> int:
    config, backend, console = _prepare(args)
    try:
        sources = _collect_sources(args.paths)
        cover = Path(args.cover).expanduser().read_bytes() if args.cover else None
    except OSError as exc:
        console.print(f"[red]Nothing was saved: {escape(str(exc))}[/red]", highlight=False)
        return 1
    if not sources and not args.text:
        raise SystemExit("Provide manuscript paths or --text.")
    tier = config.tier_for(config.reader_id)

    def _upload(path: Path | None) -> ManuscriptUpload:
        return ManuscriptUpload(
            title=args.title,
            author=args.author,
            genres=list(args.genre),
            filename=path.name if path is not None else None,
            path=path,
            text=args.text if path is None else None,
            chapter_number=args.chapter,
            chapter_title=args.chapter_title,
            cover=cover,
            cover_filename=Path(args.cover).name if args.cover else None,
            tier=tier,
            preference=args.storage,
            owner_id=config.reader_id,
        )

    uploads = [_upload(path) for path in sources] or [_upload(None)]
    failures = 0

    async def _ingest_all(progress: Progress | None) -> None:
        nonlocal failures
        task_id = progress.add_task("Ingesting", total=len(uploads)) if progress else None
        for upload in uploads:
            label = upload.filename or "pasted text"
            try:
                result = await backend.pipeline.ingest(upload)
            except PartialWriteError as exc:
                failures += 1
                console.print(f"[yellow]{label}: {exc.user_message}[/yellow]")
            except (LoungeError, ValueError) as exc:
                failures += 1
                message = exc.user_message if isinstance(exc, LoungeError) else str(exc)
                console.print(f"[red]{label}: {message}[/red]")
            else:
                console.print(
                    f"{label}: {result.message} "
                    f"[dim]({result.book.id}, {result.decision.reason})[/dim]"
                )
            if progress is not None and task_id is not None:
                progress.advance(task_id)

    if len(uploads) > 1 and console.is_terminal:
        with Progress(
            TextColumn("{task.description}"),
            BarColumn(bar_width=None),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            asyncio.run(_ingest_all(progress))
    else:
        asyncio.run(_ingest_all(None))
    return 1 if failures else 0


def _run_read(args: argparse.Namespace) -> int:
    config, backend, console = _prepare(args)
    cache = backend.reader_session(config.reader_id)

    async def _read():
        chapter = await cache.get(args.book_id, args.chapter)
        following = await cache.next_chapter_number(args.book_id, chapter.chapter_number)
        return chapter, following

    try:
        chapter, following = asyncio.run(_read())
    except LoungeError as exc:
        console.print(f"[red]{exc.user_message}[/red]")
        return 1
    book = cache.book
    heading = f"{book.title} · " if book is not None else ""
    console.rule(f"{heading}{chapter.display_title}")
    if args.html:
        console.print(chapter.content, markup=False, highlight=False)
    else:
        text = BeautifulSoup(chapter.content, "html.parser").get_text("\n\n", strip=True)
        console.print(text, markup=False, highlight=False)
    if following is not None:
        console.print(f"[dim]Next: lounge read {args.book_id} {following}[/dim]")
    return 0


def _run_history(args: argparse.Namespace) -> int:
    config, backend, console = _prepare(args)
    if args.clear:
        removed = asyncio.run(clear_local_history(backend.device))
        console.print(f"Removed {removed} device history entr{'y' if removed == 1 else 'ies'}.")
        return 0
    if args.remove:
        asyncio.run(remove_local_entry(backend.device, args.remove))
        console.print(f"Removed {args.remove} from device history.")
        return 0
    entries = asyncio.run(load_history(backend.device, backend.cloud, config.reader_id))
    if not entries:
        console.print("No reading history yet.")
        return 0
    table = Table("Book", "Author", "Chapter", "Last read", "Where")
    for entry in entries:
        millis = to_epoch_millis(entry.last_read_at)
        table.add_row(
            entry.title or entry.book_id,
            entry.author or "",
            str(entry.last_read_chapter),
            _format_millis(millis),
            "cloud" if entry.is_remote else "device",
        )
    console.print(table)
    return 0


def _format_millis(millis: int) -> str:
    if millis <= 0:
        return "-"
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def _run_books(args: argparse.Namespace) -> int:
    _, backend, console = _prepare(args)

    async def _list():
        listings = await list_books(backend.device, args.sort, genre=args.genre)
        if backend.cloud is not None:
            listings += await list_books(backend.cloud, args.sort, genre=args.genre)
        return sort_listings(listings, args.sort)

    listings = asyncio.run(_list())
    if not listings:
        console.print("No books yet.")
        return 0
    table = Table("Id", "Title", "Author", "Chapters", "Views", "Where")
    for listing in listings:
        book = listing.book
        table.add_row(
            book.id, book.title, book.author, str(book.total_chapters), str(book.views),
            book.storage_target,
        )
    console.print(table)
    return 0


def _resolve_local_ip(host: str) -> str:
    if host not in {"", "0.0.0.0"}:
        return host
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("8.8.8.8", 80))
            return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"


def _run_web(args: argparse.Namespace) -> int:
    config, backend, console = _prepare(args)
    host = args.host or config.host
    port = args.port or config.port
    app = create_app(config, backend=backend)
    console.print(f"Serving lounge from {config.root}")
    console.print(f"API URL: http://{_resolve_local_ip(host)}:{port}/api/books")
    console.print("Press Ctrl+C to stop.\n")
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="debug" if args.debug else "info",
        log_config=build_uvicorn_log_config(bool(args.debug)),
    )
    return 0


_RUNNERS = {
    "ingest": (build_ingest_parser, _run_ingest),
    "read": (build_read_parser, _run_read),
    "history": (build_history_parser, _run_history),
    "books": (build_books_parser, _run_books),
    "web": (build_web_parser, _run_web),
}


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    if argv and argv[0] in _RUNNERS:
        build, run = _RUNNERS[argv[0]]
        return run(build().parse_args(argv[1:]))
    parser = build_parser()
    if not argv:
        parser.print_help()
        return 0
    parser.parse_args(argv)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
