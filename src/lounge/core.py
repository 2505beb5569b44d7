from __future__ import annotations

import html
import io
import logging
import re
import unicodedata
import warnings
import xml.etree.ElementTree as ET
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from bs4 import (
    BeautifulSoup,
    FeatureNotFound,
    XMLParsedAsHTMLWarning,
)  # type: ignore

from .errors import EmptyManuscriptError, ParseError
from .models import default_chapter_title

logger = logging.getLogger(__name__)

HTML_EXTS = (".xhtml", ".html", ".htm")
MIN_CHAPTER_TEXT_LENGTH = 50
DEFAULT_AUTHOR = "Anonymous"

_PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n+")

_CORRUPT_ARCHIVE_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError, OSError)
_ARCHIVE_READ_ERRORS = (KeyError, *_CORRUPT_ARCHIVE_ERRORS)


@dataclass
class ExtractedChapter:
    chapter_number: int
    title: str | None
    content: str
    source: str | None = None


@dataclass
class CoverImage:
    path: str
    media_type: str | None
    data: bytes


@dataclass
class Manuscript:
    title: str | None
    author: str | None
    chapters: list[ExtractedChapter] = field(default_factory=list)
    cover: CoverImage | None = None


@dataclass
class _SpineEntry:
    idref: str
    path: str
    media_type: str | None


def is_sparse(content: str, threshold: int = MIN_CHAPTER_TEXT_LENGTH) -> bool:
    """True when the visible text of ``content`` is shorter than ``threshold``.

    Only meant for metadata-extraction triggers; sparse chapters are still persisted.
    """
    text = BeautifulSoup(content, "html.parser").get_text() if "<" in content else content
    return len(text.strip()) < threshold


# ---------- helpers: epub structure ----------


def _decode_bytes(raw: bytes) -> str:
    for enc in ("utf-8", "utf-16", "cp1252"):
        try:
            return raw.decode(enc)
        except UnicodeDecodeError:
            continue
    return raw.decode("utf-8", errors="ignore")


def _zip_read_text(zf: zipfile.ZipFile, name: str) -> str:
    return _decode_bytes(zf.read(name))


def _strip_tag(tag: str) -> str:
    return tag.split("}", 1)[-1] if "}" in tag else tag


def _get_attr(elem: ET.Element, name: str) -> str | None:
    for attr, value in elem.attrib.items():
        if _strip_tag(attr) == name:
            return value
    return None


def _resolve_relative_path(base_file: str, href: str) -> str:
    base = str(PurePosixPath(base_file).parent)
    if base not in ("", ".", "/"):
        combined = PurePosixPath(base) / href
    else:
        combined = PurePosixPath(href)
    return str(combined.as_posix())


def _find_opf_path(zf: zipfile.ZipFile) -> str:
    # META-INF/container.xml -> rootfiles/rootfile@full-path
    try:
        container = _zip_read_text(zf, "META-INF/container.xml")
        root = ET.fromstring(container)
        ns = {"c": "urn:oasis:names:tc:opendocument:xmlns:container"}
        for rf in root.findall(".//c:rootfile", ns):
            full = rf.attrib.get("full-path")
            if full:
                return full
    except (KeyError, ET.ParseError):
        pass
    for n in zf.namelist():
        if n.lower().endswith(".opf"):
            return n
    raise ParseError("OPF package document not found in EPUB")


def _load_opf(zf: zipfile.ZipFile) -> tuple[str, ET.Element]:
    opf_path = _find_opf_path(zf)
    try:
        return opf_path, ET.fromstring(_zip_read_text(zf, opf_path))
    except KeyError as exc:
        raise ParseError(f"OPF package document missing: {opf_path}") from exc
    except ET.ParseError as exc:
        raise ParseError(f"Malformed OPF package document: {exc}") from exc


def _manifest(root: ET.Element) -> dict[str, dict[str, str | None]]:
    manifest: dict[str, dict[str, str | None]] = {}
    for elem in root.iter():
        if _strip_tag(elem.tag) != "manifest":
            continue
        for child in elem:
            if _strip_tag(child.tag) != "item":
                continue
            item_id = _get_attr(child, "id")
            href = _get_attr(child, "href")
            if not item_id or not href:
                continue
            manifest[item_id] = {
                "href": href,
                "media_type": _get_attr(child, "media-type"),
                "properties": _get_attr(child, "properties"),
            }
    return manifest


def _spine_entries(zf: zipfile.ZipFile, opf_path: str, root: ET.Element) -> list[_SpineEntry]:
    manifest = _manifest(root)
    entries: list[_SpineEntry] = []
    for elem in root.iter():
        if _strip_tag(elem.tag) != "itemref":
            continue
        idref = _get_attr(elem, "idref")
        item = manifest.get(idref or "")
        if not idref or item is None or not item.get("href"):
            continue
        entries.append(
            _SpineEntry(
                idref=idref,
                path=_resolve_relative_path(opf_path, str(item["href"])),
                media_type=item.get("media_type"),
            )
        )
    # An empty spine falls back to every HTML document in archive order.
    if not entries:
        for name in zf.namelist():
            if name.lower().endswith(HTML_EXTS):
                entries.append(
                    _SpineEntry(idref=PurePosixPath(name).stem, path=name, media_type=None)
                )
    return entries


def _dc_values(root: ET.Element, name: str) -> list[str]:
    values: list[str] = []
    for elem in root.iter():
        if _strip_tag(elem.tag) != name:
            continue
        role = _get_attr(elem, "role")
        if name == "creator" and role and role.lower() not in {"aut", "author"}:
            continue
        text = unicodedata.normalize("NFKC", "".join(elem.itertext())).strip()
        if text and text not in values:
            values.append(text)
    return values


def _get_book_title(root: ET.Element) -> str | None:
    titles = _dc_values(root, "title")
    return titles[0] if titles else None


def _get_book_author(root: ET.Element) -> str | None:
    authors = _dc_values(root, "creator")
    return ", ".join(authors) if authors else None


def _extract_cover_image(
    zf: zipfile.ZipFile, opf_path: str, root: ET.Element
) -> CoverImage | None:
    manifest = _manifest(root)
    cover_candidates: list[dict[str, str | None]] = []
    for elem in root.iter():
        if _strip_tag(elem.tag) != "meta":
            continue
        name = _get_attr(elem, "name")
        content = _get_attr(elem, "content")
        if name and name.lower() == "cover" and content:
            entry = manifest.get(content.strip())
            if entry:
                cover_candidates.append(entry)
            break

    for item in manifest.values():
        properties = (item.get("properties") or "").lower()
        media_type = (item.get("media_type") or "").lower()
        if "cover-image" in properties and media_type.startswith("image/"):
            cover_candidates.append(item)

    for item_id, item in manifest.items():
        href = (item.get("href") or "").lower()
        media_type = (item.get("media_type") or "").lower()
        if ("cover" in item_id.lower() or "cover" in href) and media_type.startswith("image/"):
            cover_candidates.append(item)

    seen: set[str] = set()
    names = set(zf.namelist())
    for candidate in cover_candidates:
        href = candidate.get("href")
        if not href:
            continue
        resolved = _resolve_relative_path(opf_path, href)
        if resolved in seen or resolved not in names:
            continue
        seen.add(resolved)
        try:
            data = zf.read(resolved)
        except _ARCHIVE_READ_ERRORS as exc:
            logger.warning("Skipping unreadable cover %s: %s", resolved, exc)
            continue
        return CoverImage(path=resolved, media_type=candidate.get("media_type"), data=data)
    return None


def _soup_from_html(markup: str) -> BeautifulSoup:
    stripped = markup.lstrip()
    lower_head = stripped[:200].lower()
    xmlish = stripped.startswith("<?xml") or ("<html" in lower_head and "xmlns" in lower_head)
    parsers = ("lxml-xml", "xml", "lxml", "html.parser") if xmlish else ("lxml", "html.parser")
    for parser in parsers:
        try:
            with warnings.catch_warnings():
                warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
                return BeautifulSoup(markup, parser)
        except FeatureNotFound:
            continue
    return BeautifulSoup(markup, "html.parser")


def _body_html(markup: str) -> str:
    soup = _soup_from_html(markup)
    body = soup.find("body")
    if body is None:
        return markup.strip()
    for tag in body.find_all(["script", "style"]):
        tag.decompose()
    return "".join(str(child) for child in body.contents).strip()


def _resolve_member(names: list[str], path: str) -> str | None:
    if path in names:
        return path
    # Some spines use paths relative to a different root; match by suffix.
    for name in names:
        if name.endswith("/" + path) or path.endswith("/" + name):
            return name
    return None


# ---------- pipeline ----------


def _open_epub(source: Path | str | bytes) -> zipfile.ZipFile:
    try:
        if isinstance(source, (bytes, bytearray)):
            return zipfile.ZipFile(io.BytesIO(source), "r")
        return zipfile.ZipFile(source, "r")
    except (zipfile.BadZipFile, OSError) as exc:
        raise ParseError(f"Cannot open EPUB container: {exc}") from exc


def _read_archive(
    zf: zipfile.ZipFile,
) -> tuple[str | None, str | None, list[ExtractedChapter], CoverImage | None]:
    opf_path, root = _load_opf(zf)
    names = zf.namelist()
    chapters: list[ExtractedChapter] = []
    running_index = 1
    for entry in _spine_entries(zf, opf_path, root):
        media_type = (entry.media_type or "").lower()
        if media_type and "html" not in media_type:
            continue
        member = _resolve_member(names, entry.path)
        if member is None:
            logger.warning("Spine entry %s (%s) missing from archive", entry.idref, entry.path)
            continue
        try:
            markup = _zip_read_text(zf, member)
        except _ARCHIVE_READ_ERRORS as exc:
            logger.warning("Could not load spine entry %s: %s", entry.path, exc)
            continue
        chapters.append(
            ExtractedChapter(
                chapter_number=running_index,
                title=entry.idref or default_chapter_title(running_index),
                content=_body_html(markup),
                source=member,
            )
        )
        running_index += 1
    cover = _extract_cover_image(zf, opf_path, root)
    return _get_book_title(root), _get_book_author(root), chapters, cover


def extract_epub(source: Path | str | bytes) -> Manuscript:
    """
    Split an EPUB into chapters following its spine (reading order).

    Chapter numbers start at 1 and increase by one per loaded spine document.
    Sparse documents are kept and an unreadable cover is dropped. Raises
    ParseError for unreadable containers and EmptyManuscriptError when no
    spine document could be loaded.
    """
    with _open_epub(source) as zf:
        try:
            title, author, chapters, cover = _read_archive(zf)
        except _CORRUPT_ARCHIVE_ERRORS as exc:
            raise ParseError(f"Corrupt EPUB container: {exc}") from exc
    if not chapters:
        raise EmptyManuscriptError("No readable chapters found in EPUB spine")
    logger.debug("Extracted %d chapter(s) from EPUB %r", len(chapters), title)
    return Manuscript(title=title, author=author, chapters=chapters, cover=cover)


def text_to_html(text: str) -> str:
    normalized = text.replace("\r\n", "\n").replace("\r", "\n").strip()
    paragraphs = [p.strip() for p in _PARAGRAPH_BREAK.split(normalized) if p.strip()]
    return "".join(f"<p>{html.escape(p, quote=False)}</p>" for p in paragraphs)


def extract_text(
    text: str,
    chapter_number: int | None = None,
    title: str | None = None,
) -> list[ExtractedChapter]:
    """Turn a pasted text blob into exactly one chapter."""
    if not text or not text.strip():
        raise EmptyManuscriptError("Pasted manuscript is empty")
    number = 1 if chapter_number is None else chapter_number
    if not isinstance(number, int) or isinstance(number, bool) or number < 1:
        raise ValueError(f"Chapter number must be a positive integer, got {chapter_number!r}")
    clean_title = title.strip() if isinstance(title, str) and title.strip() else None
    return [
        ExtractedChapter(
            chapter_number=number,
            title=clean_title or default_chapter_title(number),
            content=text_to_html(text),
        )
    ]


def extract_manuscript(
    *,
    data: bytes | None = None,
    path: Path | None = None,
    filename: str | None = None,
    text: str | None = None,
    chapter_number: int | None = None,
    chapter_title: str | None = None,
) -> Manuscript:
    """Extract chapters from an uploaded file (EPUB or plain text) or pasted text."""
    name = filename or (path.name if path is not None else "")
    if path is not None and data is None:
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise ParseError(f"Cannot read manuscript {path}: {exc}") from exc
    if data is not None:
        if name.lower().endswith(".epub") or zipfile.is_zipfile(io.BytesIO(data)):
            return extract_epub(data)
        text = _decode_bytes(data)
    if text is None:
        raise EmptyManuscriptError("No manuscript file or text supplied")
    return Manuscript(
        title=None,
        author=None,
        chapters=extract_text(text, chapter_number=chapter_number, title=chapter_title),
    )


__all__ = [
    "CoverImage",
    "DEFAULT_AUTHOR",
    "ExtractedChapter",
    "MIN_CHAPTER_TEXT_LENGTH",
    "Manuscript",
    "extract_epub",
    "extract_manuscript",
    "extract_text",
    "is_sparse",
    "text_to_html",
]
