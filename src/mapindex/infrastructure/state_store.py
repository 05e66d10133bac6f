import asyncio
import json
import os
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, ClassVar

from src.config.logger_config import logger

from src.mapindex.domain.models import MapSource, format_timestamp, parse_timestamp, utc_now

STATE_VERSION = 1
FAILURE_COOLDOWN = timedelta(hours=24)
DEFAULT_DEBOUNCE_SECONDS = 5.0


class CrawlStateStore:
    """Durable per-source crawl progress.

    Mutations only touch memory and mark the store dirty. When an event loop
    is running a flush is scheduled once no mutation happened for
    ``debounce_seconds``; callers must still ``flush()`` (or ``aclose()``) on
    every exit path.
    """

    RECOVERY_SUFFIX: ClassVar[str] = ".corrupt"

    def __init__(
        self,
        state_path: str | Path,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_path = Path(state_path)
        self.debounce_seconds = debounce_seconds
        self._clock = clock
        self._processed: set[str] = set()
        self._hash_index: dict[str, str] = {}
        self._cursors: dict[str, str] = {}
        self._failures: dict[str, dict[str, str]] = {}
        self.dirty = False
        self.last_mutation_at: datetime | None = None
        self.flush_count = 0
        self.recovered_from: Path | None = None
        self._flush_handle: asyncio.TimerHandle | None = None

    @classmethod
    def for_source(cls, output_dir: str | Path, source: MapSource, **kwargs: Any) -> "CrawlStateStore":
        return cls(Path(output_dir) / ".cache" / f"{source.value}-state.json", **kwargs)

    def load(self) -> bool:
        """Load persisted state; returns False when starting fresh."""
        self._reset()
        if not self.state_path.exists():
            return False
        try:
            payload = json.loads(self.state_path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("state root is not an object")
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as exc:
            self.recovered_from = self._move_aside()
            logger.warning(
                "Unreadable crawl state {} ({}); moved to {} and starting fresh",
                self.state_path,
                exc,
                self.recovered_from,
            )
            return False

        version = payload.get("version")
        if version != STATE_VERSION:
            logger.warning(
                "Crawl state {} has version {} (expected {}); starting fresh",
                self.state_path,
                version,
                STATE_VERSION,
            )
            return False

        self._processed = {str(item) for item in payload.get("processedRecordIds") or []}
        self._hash_index = {str(k): str(v) for k, v in (payload.get("contentHashIndex") or {}).items()}
        self._cursors = {str(k): str(v) for k, v in (payload.get("collectionCursors") or {}).items()}
        self._failures = {
            str(k): {"error": str(v.get("error", "")), "failedAt": str(v.get("failedAt", ""))}
            for k, v in (payload.get("failedRecords") or {}).items()
            if isinstance(v, dict)
        }
        logger.info(
            "Loaded crawl state {}: {} processed records, {} hashes, {} failures",
            self.state_path.name,
            len(self._processed),
            len(self._hash_index),
            len(self._failures),
        )
        return True

    def is_record_processed(self, record_id: str) -> bool:
        return record_id in self._processed

    def mark_record_processed(self, record_id: str) -> None:
        self._processed.add(record_id)
        self._failures.pop(record_id, None)
        self._touch()

    def get_canonical_for_hash(self, content_hash: str) -> str | None:
        return self._hash_index.get(content_hash)

    def mark_hash_processed(self, content_hash: str, entry_id: str) -> None:
        self._hash_index[content_hash] = entry_id
        self._touch()

    def record_failure(self, record_id: str, message: str) -> None:
        self._failures[record_id] = {"error": message, "failedAt": format_timestamp(self._clock())}
        self._touch()

    def should_retry(self, record_id: str) -> bool:
        failure = self._failures.get(record_id)
        if failure is None:
            return True
        try:
            failed_at = parse_timestamp(failure["failedAt"])
        except ValueError:
            return True
        return self._clock() - failed_at >= FAILURE_COOLDOWN

    def clear_failure(self, record_id: str) -> None:
        if self._failures.pop(record_id, None) is not None:
            self._touch()

    def get_failure(self, record_id: str) -> dict[str, str] | None:
        failure = self._failures.get(record_id)
        return dict(failure) if failure is not None else None

    def get_cursor(self, collection_id: str) -> datetime | None:
        value = self._cursors.get(collection_id)
        if not value:
            return None
        try:
            return parse_timestamp(value)
        except ValueError:
            return None

    def set_cursor(self, collection_id: str, timestamp: datetime) -> None:
        current = self.get_cursor(collection_id)
        if current is not None and current >= timestamp:
            return
        self._cursors[collection_id] = format_timestamp(timestamp)
        self._touch()

    def stats(self) -> dict[str, int]:
        return {
            "processedRecords": len(self._processed),
            "uniqueHashes": len(self._hash_index),
            "collections": len(self._cursors),
            "failedRecords": len(self._failures),
        }

    def flush(self) -> bool:
        """Write pending changes atomically; returns False when there was nothing to write."""
        self._cancel_scheduled_flush()
        if not self.dirty:
            return False
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.state_path.with_name(self.state_path.name + ".tmp")
        try:
            tmp_path.write_text(json.dumps(self.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self.state_path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
        self.dirty = False
        self.flush_count += 1
        logger.debug("Flushed crawl state to {}", self.state_path)
        return True

    def clear(self) -> None:
        self._reset()
        self._touch()
        self.flush()
        logger.info("Cleared crawl state {}", self.state_path)

    async def aclose(self) -> None:
        self.flush()

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "processedRecordIds": sorted(self._processed),
            "contentHashIndex": dict(sorted(self._hash_index.items())),
            "collectionCursors": dict(sorted(self._cursors.items())),
            "failedRecords": {k: dict(v) for k, v in sorted(self._failures.items())},
        }

    def _reset(self) -> None:
        self._processed = set()
        self._hash_index = {}
        self._cursors = {}
        self._failures = {}
        self.dirty = False
        self.last_mutation_at = None

    def _touch(self) -> None:
        self.dirty = True
        self.last_mutation_at = self._clock()
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cancel_scheduled_flush()
        self._flush_handle = loop.call_later(self.debounce_seconds, self._debounced_flush)

    def _cancel_scheduled_flush(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None

    def _debounced_flush(self) -> None:
        self._flush_handle = None
        try:
            self.flush()
        except OSError as exc:
            logger.error("Debounced flush of {} failed: {}", self.state_path, exc)

    def _move_aside(self) -> Path:
        stamp = self._clock().strftime("%Y%m%d%H%M%S")
        backup = self.state_path.with_suffix(f"{self.state_path.suffix}{self.RECOVERY_SUFFIX}.{stamp}")
        self.state_path.replace(backup)
        return backup
