from __future__ import annotations

import re
import time
from typing import Callable
from uuid import uuid4

from .models import CLOUD, StorageTarget, normalize_target

DEFAULT_AUTHOR_SLUG = "anonymous"

# ASCII word characters only; whitespace stays Unicode-aware.
_NON_WORD = re.compile(r"[^A-Za-z0-9_\s-]")
_SEPARATORS = re.compile(r"[\s_-]+")


def slugify(text: str) -> str:
    """Lowercase, drop non-ASCII-word characters, collapse whitespace/dashes/underscores to ``_``."""
    cleaned = _NON_WORD.sub("", (text or "").lower().strip())
    return _SEPARATORS.sub("_", cleaned)


def local_book_id(author: str, title: str) -> str:
    """``{authorSlug}_{titleSlug}``; raises ValueError when the title has no word characters."""
    title_slug = slugify(title)
    if not title_slug.strip("_"):
        raise ValueError(f"Title {title!r} has no usable characters")
    author_slug = slugify(author)
    return f"{author_slug if author_slug.strip('_') else DEFAULT_AUTHOR_SLUG}_{title_slug}"


def synthetic_book_id() -> str:
    return f"book_{uuid4().hex[:12]}"


def resolve_book_id(
    author: str,
    title: str,
    target: StorageTarget | str,
    *,
    clock: Callable[[], float] = time.time,
) -> str:
    """
    Derive the book identifier for ``target``.

    Local ids are the bare slug so a repeat upload merges into the same book;
    cloud ids carry an epoch-millisecond suffix.  Titles without any word
    characters get a synthetic id.
    """
    try:
        base = local_book_id(author, title)
    except ValueError:
        return synthetic_book_id()
    if normalize_target(target) == CLOUD:
        return f"{base}_{int(clock() * 1000)}"
    return base


__all__ = ["local_book_id", "resolve_book_id", "slugify", "synthetic_book_id"]
