from __future__ import annotations

from typing import Iterable


class LoungeError(RuntimeError):
    """Base class for errors surfaced to upload and reader handlers."""

    @property
    def user_message(self) -> str:
        return str(self)


class ParseError(LoungeError):
    """Raised when a manuscript container cannot be opened or parsed."""

    @property
    def user_message(self) -> str:
        return f"Nothing was saved: the manuscript could not be read ({self})."


class EmptyManuscriptError(LoungeError):
    """Raised when extraction yields zero chapters."""

    @property
    def user_message(self) -> str:
        return "Nothing was saved: the manuscript contains no chapters."


class AssetNormalizationError(LoungeError):
    """Raised when a cover or banner asset cannot be normalized."""


class AuthorizationViolation(LoungeError):
    """Raised when a caller without cloud rights reaches the cloud writer."""

    @property
    def user_message(self) -> str:
        return f"Nothing was saved: {self}"


class StoreError(LoungeError):
    """Raised by document and blob stores when a round-trip fails."""


class QuotaExceededError(StoreError):
    """Raised by a blob store that has run out of capacity."""


class BookWriteError(LoungeError):
    """Raised when the book document itself could not be written."""

    def __init__(self, book_id: str, message: str) -> None:
        super().__init__(message)
        self.book_id = book_id

    @property
    def user_message(self) -> str:
        return f"Nothing was saved for {self.book_id}: {self}"


class PartialWriteError(LoungeError):
    """Raised when some chapter writes failed after the book was written.

    ``failed`` lists the chapter numbers to retry; ``saved`` those that landed.
    """

    def __init__(
        self,
        book_id: str,
        failed: Iterable[int],
        saved: Iterable[int] = (),
        errors: dict[int, BaseException] | None = None,
    ) -> None:
        self.book_id = book_id
        self.failed = sorted(set(failed))
        self.saved = sorted(set(saved))
        self.errors = dict(errors or {})
        super().__init__(
            f"{len(self.failed)} chapter write(s) failed for {book_id}: "
            + ", ".join(str(number) for number in self.failed)
        )

    @property
    def user_message(self) -> str:
        return (
            f"Some chapters were saved ({len(self.saved)}), "
            f"{len(self.failed)} failed: "
            + ", ".join(str(number) for number in self.failed)
        )


class ChapterNotFoundError(LoungeError):
    """Raised when neither the direct key nor the fallback query finds a chapter."""

    def __init__(self, book_id: str, chapter_number: int) -> None:
        super().__init__(f"Chapter {chapter_number} of {book_id} not found")
        self.book_id = book_id
        self.chapter_number = chapter_number


__all__ = [
    "AssetNormalizationError",
    "AuthorizationViolation",
    "BookWriteError",
    "ChapterNotFoundError",
    "EmptyManuscriptError",
    "LoungeError",
    "ParseError",
    "PartialWriteError",
    "QuotaExceededError",
    "StoreError",
]
