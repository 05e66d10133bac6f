from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.mapindex.domain.models import CanonicalEntry, Record, format_timestamp


@dataclass(frozen=True)
class TokenInfo:
    token: str
    user_id: str | None = None
    username: str | None = None
    expires_at: datetime | None = None

    def to_dict(self, saved_at: datetime) -> dict[str, Any]:
        return {
            "token": self.token,
            "userId": self.user_id,
            "username": self.username,
            "savedAt": format_timestamp(saved_at),
            "expiresAt": format_timestamp(self.expires_at) if self.expires_at else None,
        }


@dataclass(frozen=True)
class MaterializedEntry:
    """A canonical entry written to disk but not yet accepted into the catalog."""

    entry: CanonicalEntry
    content_hash: str
    locator_key: str | None


@dataclass
class MaterializationResult:
    entries: list[MaterializedEntry] = field(default_factory=list)
    precheck_skipped: int = 0
    error: str | None = None


@dataclass
class RecordOutcome:
    record: Record
    status: str
    result: MaterializationResult | None = None
    error: str | None = None

    @classmethod
    def ignored(cls, record: Record) -> "RecordOutcome":
        return cls(record=record, status="ignored")

    @classmethod
    def failed(cls, record: Record, error: str) -> "RecordOutcome":
        return cls(record=record, status="failed", error=error)

    @classmethod
    def done(cls, record: Record, result: MaterializationResult) -> "RecordOutcome":
        return cls(record=record, status="done", result=result)
