from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Mapping

StorageTarget = Literal["local", "cloud"]
AuthorizationTier = Literal["approved-contributor", "unapproved", "admin"]

LOCAL: StorageTarget = "local"
CLOUD: StorageTarget = "cloud"

TIER_APPROVED: AuthorizationTier = "approved-contributor"
TIER_UNAPPROVED: AuthorizationTier = "unapproved"
TIER_ADMIN: AuthorizationTier = "admin"

_TIER_ALIASES = {
    "approved": TIER_APPROVED,
    "approved_contributor": TIER_APPROVED,
    "approved-contributor": TIER_APPROVED,
    "contributor": TIER_APPROVED,
    "admin": TIER_ADMIN,
    "administrator": TIER_ADMIN,
}
_TARGET_ALIASES = {
    "cloud": CLOUD,
    "remote": CLOUD,
    "local": LOCAL,
    "device": LOCAL,
}


def normalize_tier(value: str | None) -> AuthorizationTier:
    if not value:
        return TIER_UNAPPROVED
    normalized = value.strip().lower().replace(" ", "-")
    return _TIER_ALIASES.get(normalized, TIER_UNAPPROVED)


def normalize_target(value: str | None) -> StorageTarget:
    if not value:
        return LOCAL
    return _TARGET_ALIASES.get(value.strip().lower(), LOCAL)


def default_chapter_title(chapter_number: int) -> str:
    return f"Chapter {chapter_number}"


def _normalize_genres(value: object) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, Iterable):
        return []
    genres: list[str] = []
    for entry in value:
        if isinstance(entry, str) and entry.strip() and entry.strip() not in genres:
            genres.append(entry.strip())
    return genres


def _int_or(value: object, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return default


@dataclass
class Book:
    id: str
    title: str
    author: str
    genres: list[str] = field(default_factory=list)
    cover_ref: str | None = None
    cover_size: int = 0
    total_chapters: int = 0
    storage_target: StorageTarget = LOCAL
    owner_id: str | None = None
    views: int = 0
    created_at: Any = None
    last_updated: Any = None

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "title_lower": self.title.lower(),
            "author": self.author,
            "author_lower": self.author.lower(),
            "genres": list(self.genres),
            "cover_ref": self.cover_ref,
            "cover_size": self.cover_size,
            "total_chapters": self.total_chapters,
            "storage_target": self.storage_target,
            "views": self.views,
        }
        if self.owner_id:
            payload["owner_id"] = self.owner_id
        if self.created_at is not None:
            payload["created_at"] = self.created_at
        if self.last_updated is not None:
            payload["last_updated"] = self.last_updated
        return payload

    @classmethod
    def from_payload(cls, book_id: str, payload: Mapping[str, Any]) -> "Book":
        title = payload.get("title")
        author = payload.get("author")
        cover_ref = payload.get("cover_ref")
        owner_id = payload.get("owner_id")
        return cls(
            id=book_id,
            title=title if isinstance(title, str) else book_id,
            author=author if isinstance(author, str) else "Anonymous",
            genres=_normalize_genres(payload.get("genres") or payload.get("genre")),
            cover_ref=cover_ref if isinstance(cover_ref, str) else None,
            cover_size=_int_or(payload.get("cover_size"), 0),
            total_chapters=_int_or(payload.get("total_chapters"), 0),
            storage_target=normalize_target(payload.get("storage_target")),
            owner_id=owner_id if isinstance(owner_id, str) else None,
            views=_int_or(payload.get("views"), 0),
            created_at=payload.get("created_at"),
            last_updated=payload.get("last_updated"),
        )


@dataclass
class Chapter:
    book_id: str
    chapter_number: int
    content: str
    title: str | None = None

    @property
    def display_title(self) -> str:
        return self.title or default_chapter_title(self.chapter_number)

    def as_payload(self) -> dict[str, Any]:
        return {
            "book_id": self.book_id,
            "chapter_number": self.chapter_number,
            "title": self.display_title,
            "content": self.content,
        }

    @classmethod
    def from_payload(
        cls, book_id: str, payload: Mapping[str, Any], doc_id: str | None = None
    ) -> "Chapter":
        number = _int_or(payload.get("chapter_number"), 0)
        if number <= 0 and doc_id is not None:
            number = _int_or(doc_id, 0)
        title = payload.get("title")
        content = payload.get("content")
        return cls(
            book_id=book_id,
            chapter_number=number,
            content=content if isinstance(content, str) else "",
            title=title if isinstance(title, str) and title.strip() else None,
        )


@dataclass
class ReadingProgress:
    book_id: str
    last_read_chapter: int
    last_read_at: Any
    is_remote: bool
    title: str | None = None
    author: str | None = None
    cover_ref: str | None = None
    genres: list[str] = field(default_factory=list)

    def as_payload(self) -> dict[str, Any]:
        return {
            "book_id": self.book_id,
            "title": self.title,
            "author": self.author,
            "cover_ref": self.cover_ref,
            "genres": list(self.genres),
            "last_read_chapter": self.last_read_chapter,
            "last_read_at": self.last_read_at,
            "is_remote": self.is_remote,
        }

    @classmethod
    def from_payload(
        cls, payload: Mapping[str, Any], *, is_remote: bool, doc_id: str | None = None
    ) -> "ReadingProgress":
        book_id = payload.get("book_id")
        if not isinstance(book_id, str) or not book_id:
            book_id = doc_id or ""
        title = payload.get("title")
        author = payload.get("author")
        cover_ref = payload.get("cover_ref")
        return cls(
            book_id=book_id,
            last_read_chapter=_int_or(payload.get("last_read_chapter"), 1),
            last_read_at=payload.get("last_read_at"),
            is_remote=is_remote,
            title=title if isinstance(title, str) else None,
            author=author if isinstance(author, str) else None,
            cover_ref=cover_ref if isinstance(cover_ref, str) else None,
            genres=_normalize_genres(payload.get("genres")),
        )


__all__ = [
    "AuthorizationTier",
    "Book",
    "CLOUD",
    "Chapter",
    "LOCAL",
    "ReadingProgress",
    "StorageTarget",
    "TIER_ADMIN",
    "TIER_APPROVED",
    "TIER_UNAPPROVED",
    "default_chapter_title",
    "normalize_target",
    "normalize_tier",
]
