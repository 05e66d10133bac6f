import asyncio
import json
from collections import Counter
from pathlib import Path
from typing import Any, TextIO

from src.mapindex.domain.models import format_timestamp, utc_now


class ApiEventJsonlSink:
    """Append-only JSONL audit trail of every remote call attempt of one run.

    Outcomes are tallied as events are written, so the run can log a summary
    without re-reading the file.
    """

    def __init__(self, output_dir: str | Path, run_id: str) -> None:
        self.run_id = run_id
        self.file_path = Path(output_dir) / f"api_events_{run_id}.jsonl"
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        self.outcomes: Counter[str] = Counter()
        self.retried_attempts = 0
        self._lock = asyncio.Lock()
        self._handle: TextIO | None = self.file_path.open("a", encoding="utf-8")

    async def write_event(self, event: dict[str, Any]) -> None:
        record = {"run_id": self.run_id, "recorded_at": format_timestamp(utc_now()), **event}
        line = json.dumps(record, ensure_ascii=False, default=str)
        async with self._lock:
            if self._handle is None:
                raise RuntimeError(f"Event log {self.file_path.name} is already closed")
            self._handle.write(line + "\n")
            self._handle.flush()
            self._tally(record)

    def _tally(self, record: dict[str, Any]) -> None:
        self.outcomes[str(record.get("outcome") or "unknown")] += 1
        if (record.get("attempt") or 1) > 1:
            self.retried_attempts += 1

    def summary(self) -> dict[str, Any]:
        return {
            "events": sum(self.outcomes.values()),
            "retried_attempts": self.retried_attempts,
            "outcomes": dict(sorted(self.outcomes.items())),
        }

    def close(self) -> None:
        if self._handle is None:
            return
        self._handle.close()
        self._handle = None
