"""Filesystem memoization of upstream fetches with stale-data fallback.

A live fetch that succeeds is persisted before the next indicator is
requested. When a later live fetch fails, the last stored frame is served
instead and the caller is told so through ``Cached.fallback_error``.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Union

import pandas as pd

from datah.errors import DatahError
from datah.logging import get_logger
from datah.settings import Settings
from pipelines.common.atomic_io import write_json_atomic


@dataclass(frozen=True)
class CacheEntry:
    data: pd.DataFrame
    stored_at: datetime


@dataclass(frozen=True)
class Live:
    data: pd.DataFrame


@dataclass(frozen=True)
class Cached:
    data: pd.DataFrame
    stored_at: datetime
    fallback_error: Exception | None = None

    @property
    def is_fallback(self) -> bool:
        return self.fallback_error is not None


@dataclass(frozen=True)
class Failed:
    error: Exception


FetchOutcome = Union[Live, Cached, Failed]


def _frame_to_records(frame: pd.DataFrame) -> list[dict[str, Any]]:
    clean = frame.astype("object").where(frame.notna(), None)
    return clean.to_dict(orient="records")


class FetchCache:
    def __init__(
        self,
        root: Path,
        *,
        max_age_hours: float | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.root = Path(root)
        self.max_age_hours = max_age_hours
        self._clock = clock
        self.logger = get_logger("fetch_cache")

    @classmethod
    def from_settings(cls, settings: Settings) -> "FetchCache":
        return cls(settings.fetch_cache_root, max_age_hours=settings.cache_max_age_hours)

    @staticmethod
    def key_for(function_name: str, args: dict[str, Any]) -> str:
        encoded = json.dumps([function_name, args], sort_keys=True, default=str, ensure_ascii=False)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    def path_for(self, key: str) -> Path:
        return self.root / f"{key}.json"

    def load(self, key: str) -> CacheEntry | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            stored_at = datetime.fromisoformat(payload["stored_at"].replace("Z", "+00:00"))
            frame = pd.DataFrame(payload["records"], columns=payload["columns"])
        except (OSError, ValueError, KeyError, TypeError) as exc:
            self.logger.warning("fetch_cache_entry_corrupt", path=path.as_posix(), error=str(exc))
            return None
        return CacheEntry(data=frame, stored_at=stored_at)

    def store(self, key: str, frame: pd.DataFrame, *, function_name: str, args: dict[str, Any]) -> Path:
        stored_at = self._clock().replace(microsecond=0)
        payload = {
            "function": function_name,
            "args": args,
            "stored_at": stored_at.isoformat().replace("+00:00", "Z"),
            "columns": list(frame.columns),
            "records": _frame_to_records(frame),
        }
        return write_json_atomic(self.path_for(key), payload, indent=None)

    def is_fresh(self, entry: CacheEntry) -> bool:
        if self.max_age_hours is None:
            return True
        return self._clock() - entry.stored_at <= timedelta(hours=self.max_age_hours)


def fetch_with_fallback(
    cache: FetchCache,
    function_name: str,
    args: dict[str, Any],
    fetch_fn: Callable[[], pd.DataFrame],
    *,
    refresh: bool = False,
) -> FetchOutcome:
    """Serve a fresh cache entry, else fetch live, else fall back to any stored entry."""
    logger = cache.logger
    key = cache.key_for(function_name, args)
    entry = cache.load(key)

    if entry is not None and not refresh and cache.is_fresh(entry):
        logger.info("fetch_cache_hit", function=function_name, args=args, rows=int(len(entry.data)))
        return Cached(data=entry.data, stored_at=entry.stored_at)

    try:
        frame = fetch_fn()
    except DatahError as exc:
        if entry is not None:
            logger.warning(
                "fetch_fallback_to_cache",
                function=function_name,
                args=args,
                stored_at=entry.stored_at.isoformat(),
                error=str(exc),
            )
            return Cached(data=entry.data, stored_at=entry.stored_at, fallback_error=exc)
        return Failed(error=exc)

    cache.store(key, frame, function_name=function_name, args=args)
    logger.info("fetch_live", function=function_name, args=args, rows=int(len(frame)))
    return Live(data=frame)
