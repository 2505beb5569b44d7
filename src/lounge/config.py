from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from .delivery import DEFAULT_CACHE_SIZE, DEFAULT_PREFETCH_WINDOW
from .models import TIER_ADMIN, TIER_APPROVED, TIER_UNAPPROVED
from .stores import DEFAULT_FAILOVER_THRESHOLD

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "lounge.toml"
DEFAULT_ROOT = Path("~/.lounge")
DEFAULT_PORT = 2047


@dataclass
class LoungeConfig:
    root: Path
    cloud_enabled: bool = True
    cache_size: int = DEFAULT_CACHE_SIZE
    prefetch_window: int = DEFAULT_PREFETCH_WINDOW
    failover_bytes: int = DEFAULT_FAILOVER_THRESHOLD
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    reader_id: str | None = None
    approved_readers: tuple[str, ...] = ()
    admin_readers: tuple[str, ...] = ()

    @property
    def device_dir(self) -> Path:
        return self.root / "device"

    @property
    def cloud_dir(self) -> Path:
        return self.root / "cloud"

    @property
    def blob_dir(self) -> Path:
        return self.root / "blobs"

    @property
    def backup_blob_dir(self) -> Path:
        return self.root / "blobs-backup"

    def tier_for(self, reader_id: str | None) -> str:
        """Server-side tier lookup; anonymous and unknown readers are unapproved."""
        if not reader_id:
            return TIER_UNAPPROVED
        if reader_id in self.admin_readers:
            return TIER_ADMIN
        if reader_id in self.approved_readers:
            return TIER_APPROVED
        return TIER_UNAPPROVED


def _parse_int(raw: object, fallback: int, *, minimum: int = 1, maximum: int | None = None) -> int:
    value = fallback
    if isinstance(raw, bool):
        raw = None
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, str) and raw.strip():
        try:
            value = int(raw.strip())
        except ValueError:
            logger.warning("Ignoring non-integer setting %r", raw)
            value = fallback
    if value < minimum:
        value = fallback
    if maximum is not None:
        value = min(value, maximum)
    return value


def _parse_bool(raw: object, fallback: bool) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        lowered = raw.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return fallback


def _parse_names(raw: object) -> tuple[str, ...]:
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, (list, tuple)):
        return ()
    return tuple(str(item).strip() for item in raw if str(item).strip())


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as fh:
            data = tomllib.load(fh)
    except FileNotFoundError:
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"Invalid config file {path}: {exc}") from exc
    section = data.get("lounge", data)
    return dict(section) if isinstance(section, dict) else {}


def load_config(
    root: Path | str | None = None,
    *,
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> LoungeConfig:
    """
    Build a config from ``lounge.toml`` (in ``root`` unless ``config_path`` is
    given) with ``LOUNGE_*`` environment variables taking precedence.
    """
    env = os.environ if env is None else env
    root_value = root or env.get("LOUNGE_ROOT") or DEFAULT_ROOT
    root_path = Path(root_value).expanduser().resolve()
    file_values = _read_toml(config_path or root_path / CONFIG_FILENAME)

    def _value(key: str) -> object:
        env_value = env.get(f"LOUNGE_{key.upper()}")
        if env_value is not None and env_value != "":
            return env_value
        return file_values.get(key)

    port = _parse_int(_value("port"), DEFAULT_PORT, maximum=65535)
    reader = _value("reader_id")
    host = _value("host")
    return LoungeConfig(
        root=root_path,
        cloud_enabled=_parse_bool(_value("cloud_enabled"), True),
        cache_size=_parse_int(_value("cache_size"), DEFAULT_CACHE_SIZE, maximum=1024),
        prefetch_window=_parse_int(_value("prefetch_window"), DEFAULT_PREFETCH_WINDOW, maximum=64),
        failover_bytes=_parse_int(_value("failover_bytes"), DEFAULT_FAILOVER_THRESHOLD),
        host=host.strip() if isinstance(host, str) and host.strip() else "0.0.0.0",
        port=port,
        reader_id=reader.strip() if isinstance(reader, str) and reader.strip() else None,
        approved_readers=_parse_names(_value("approved_readers")),
        admin_readers=_parse_names(_value("admin_readers")),
    )


__all__ = ["CONFIG_FILENAME", "LoungeConfig", "load_config"]
