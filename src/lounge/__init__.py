from .core import ExtractedChapter, Manuscript, extract_epub, extract_manuscript, extract_text
from .delivery import ChapterDeliveryCache, PrefetchResult
from .errors import (
    AuthorizationViolation,
    BookWriteError,
    ChapterNotFoundError,
    EmptyManuscriptError,
    LoungeError,
    ParseError,
    PartialWriteError,
    StoreError,
)
from .history import ProgressRecorder, load_history, merge_history
from .identity import resolve_book_id, slugify
from .persistence import PersistenceRouter, RoutingDecision, route_upload
from .uploads import IngestPipeline, ManuscriptUpload

__all__ = [
    "ExtractedChapter",
    "Manuscript",
    "extract_epub",
    "extract_manuscript",
    "extract_text",
    "slugify",
    "resolve_book_id",
    "route_upload",
    "RoutingDecision",
    "PersistenceRouter",
    "IngestPipeline",
    "ManuscriptUpload",
    "ChapterDeliveryCache",
    "PrefetchResult",
    "ProgressRecorder",
    "merge_history",
    "load_history",
    "LoungeError",
    "ParseError",
    "EmptyManuscriptError",
    "AuthorizationViolation",
    "BookWriteError",
    "PartialWriteError",
    "ChapterNotFoundError",
    "StoreError",
]
