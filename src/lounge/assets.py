from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Literal

from PIL import Image, UnidentifiedImageError

from .errors import AssetNormalizationError

logger = logging.getLogger(__name__)

COVER_MAX_EDGE = 800
HERO_MAX_EDGE = 1920
JPEG_QUALITY = 85

MediaType = Literal["image", "video"]

_VIDEO_EXTS = {".mp4": "video/mp4", ".webm": "video/webm", ".mov": "video/quicktime"}


@dataclass
class NormalizedAsset:
    data: bytes
    media_type: MediaType
    content_type: str
    filename: str
    width: int | None = None
    height: int | None = None

    @property
    def size(self) -> int:
        return len(self.data)


def _resample_filter():
    try:
        return Image.Resampling.LANCZOS  # type: ignore[attr-defined]
    except AttributeError:  # pragma: no cover - older Pillow
        return Image.LANCZOS if hasattr(Image, "LANCZOS") else Image.BICUBIC


def _video_content_type(filename: str, content_type: str | None) -> str | None:
    if content_type and content_type.lower().startswith("video/"):
        return content_type.lower()
    return _VIDEO_EXTS.get(PurePosixPath(filename).suffix.lower())


def normalize_asset(
    data: bytes,
    filename: str = "cover",
    content_type: str | None = None,
    *,
    max_edge: int = COVER_MAX_EDGE,
    quality: int = JPEG_QUALITY,
) -> NormalizedAsset:
    """
    Re-encode an image as JPEG with its longest edge capped at ``max_edge``.

    Videos pass through untouched but are tagged ``media_type="video"``.
    """
    if not data:
        raise AssetNormalizationError("Empty asset")
    stem = PurePosixPath(filename or "cover").stem or "cover"
    video_type = _video_content_type(filename or "", content_type)
    if video_type is not None:
        return NormalizedAsset(
            data=data,
            media_type="video",
            content_type=video_type,
            filename=PurePosixPath(filename).name,
        )
    if content_type and not content_type.lower().startswith("image/"):
        raise AssetNormalizationError(f"Unsupported asset type: {content_type}")
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = img.convert("RGB")
            width, height = img.size
            if width == 0 or height == 0:
                raise AssetNormalizationError("Image has no pixels")
            longest = max(width, height)
            if longest > max_edge:
                scale = max_edge / longest
                img = img.resize(
                    (max(1, round(width * scale)), max(1, round(height * scale))),
                    resample=_resample_filter(),
                )
            buffer = io.BytesIO()
            img.save(buffer, format="JPEG", quality=quality, optimize=True)
            out_width, out_height = img.size
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise AssetNormalizationError(f"Cannot decode image {filename}: {exc}") from exc
    logger.debug("Normalized %s from %dx%d to %dx%d", filename, width, height, out_width, out_height)
    return NormalizedAsset(
        data=buffer.getvalue(),
        media_type="image",
        content_type="image/jpeg",
        filename=f"{stem}.jpg",
        width=out_width,
        height=out_height,
    )


def normalize_cover(
    data: bytes | None, filename: str = "cover", content_type: str | None = None
) -> NormalizedAsset | None:
    """Best-effort cover normalization: failures are logged and yield ``None``."""
    if not data:
        return None
    try:
        asset = normalize_asset(data, filename, content_type, max_edge=COVER_MAX_EDGE)
    except AssetNormalizationError as exc:
        logger.warning("Cover skipped: %s", exc)
        return None
    if asset.media_type != "image":
        logger.warning("Cover skipped: %s is not an image", filename)
        return None
    return asset


def normalize_hero(
    data: bytes, filename: str = "hero", content_type: str | None = None
) -> NormalizedAsset:
    return normalize_asset(data, filename, content_type, max_edge=HERO_MAX_EDGE)


__all__ = [
    "COVER_MAX_EDGE",
    "HERO_MAX_EDGE",
    "NormalizedAsset",
    "normalize_asset",
    "normalize_cover",
    "normalize_hero",
]
