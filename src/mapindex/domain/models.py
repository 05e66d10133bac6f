from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class MapSource(str, Enum):
    INTERNET_ARCHIVE = "internet_archive"
    DISCORD_COMMUNITY = "discord_community"
    DISCORD_ARCHIVE = "discord_archive"
    HOGNOSE = "hognose"


class ArtifactKind(str, Enum):
    DAT = "dat"
    IMAGE = "image"
    THUMBNAIL = "thumbnail"
    OTHER = "other"


class CollectionShape(str, Enum):
    FLAT = "flat"
    HIERARCHICAL = "hierarchical"


class ResponseShapeError(ValueError):
    """Raised when a remote page does not decode into the expected variant."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value or "").strip()
        if not text:
            raise ValueError("empty timestamp")
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class Attachment:
    filename: str
    url: str
    size: int = 0
    sha256: str | None = None


@dataclass(frozen=True)
class Collection:
    collection_id: str
    name: str
    shape: CollectionShape = CollectionShape.FLAT
    parent_id: str | None = None


@dataclass(frozen=True)
class Record:
    record_id: str
    author: str
    timestamp: datetime
    collection_id: str
    content: str = ""
    attachments: tuple[Attachment, ...] = field(default_factory=tuple)
    title: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Page:
    items: tuple[Record, ...]
    next_cursor: str | None
    has_more: bool


@dataclass(frozen=True)
class RecordClassification:
    primaries: tuple[Attachment, ...]
    containers: tuple[Attachment, ...]

    @property
    def qualifies(self) -> bool:
        return bool(self.primaries or self.containers)


@dataclass
class ArtifactFile:
    filename: str
    path: str
    size: int
    hash: str | None
    kind: ArtifactKind

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "path": self.path,
            "size": self.size,
            "hash": self.hash,
            "kind": self.kind.value,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ArtifactFile":
        return cls(
            filename=str(payload["filename"]),
            path=str(payload["path"]),
            size=int(payload.get("size") or 0),
            hash=payload.get("hash") or None,
            kind=ArtifactKind(payload.get("kind") or payload.get("type") or "other"),
        )


@dataclass
class LevelMetadata:
    id: str
    title: str
    author: str
    source: MapSource
    posted_date: datetime
    description: str = ""
    tags: list[str] = field(default_factory=list)
    source_url: str | None = None
    original_id: str | None = None
    format_version: str | None = None
    file_size: int | None = None
    download_count: int | None = None
    release_id: str | None = None
    discord_channel_id: str | None = None
    discord_channel_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "description": self.description,
            "tags": list(self.tags),
            "source": self.source.value,
            "sourceUrl": self.source_url,
            "originalId": self.original_id,
            "postedDate": format_timestamp(self.posted_date),
        }
        optional = {
            "formatVersion": self.format_version,
            "fileSize": self.file_size,
            "downloadCount": self.download_count,
            "releaseId": self.release_id,
            "discordChannelId": self.discord_channel_id,
            "discordChannelName": self.discord_channel_name,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "LevelMetadata":
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title") or ""),
            author=str(payload.get("author") or ""),
            source=MapSource(payload["source"]),
            posted_date=parse_timestamp(payload["postedDate"]),
            description=str(payload.get("description") or ""),
            tags=[str(tag) for tag in payload.get("tags") or []],
            source_url=payload.get("sourceUrl"),
            original_id=payload.get("originalId"),
            format_version=payload.get("formatVersion"),
            file_size=payload.get("fileSize"),
            download_count=payload.get("downloadCount"),
            release_id=payload.get("releaseId"),
            discord_channel_id=payload.get("discordChannelId"),
            discord_channel_name=payload.get("discordChannelName"),
        )


@dataclass
class CanonicalEntry:
    metadata: LevelMetadata
    files: list[ArtifactFile]
    storage_path: str
    indexed: datetime = field(default_factory=utc_now)
    last_updated: datetime = field(default_factory=utc_now)

    @property
    def id(self) -> str:
        return self.metadata.id

    @property
    def source(self) -> MapSource:
        return self.metadata.source

    @property
    def primary_file(self) -> ArtifactFile | None:
        for item in self.files:
            if item.kind is ArtifactKind.DAT:
                return item
        return None

    @property
    def content_hash(self) -> str | None:
        primary = self.primary_file
        return primary.hash if primary is not None else None

    def to_dict(self) -> dict[str, Any]:
        primary = self.primary_file
        return {
            "id": self.id,
            "metadata": self.metadata.to_dict(),
            "files": [item.to_dict() for item in self.files],
            "storagePath": self.storage_path,
            "datFilePath": primary.path if primary is not None else "",
            "indexed": format_timestamp(self.indexed),
            "lastUpdated": format_timestamp(self.last_updated),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CanonicalEntry":
        return cls(
            metadata=LevelMetadata.from_dict(payload["metadata"]),
            files=[ArtifactFile.from_dict(item) for item in payload.get("files") or []],
            storage_path=str(payload.get("storagePath") or payload.get("catalogPath") or ""),
            indexed=parse_timestamp(payload["indexed"]),
            last_updated=parse_timestamp(payload["lastUpdated"]),
        )


@dataclass(frozen=True)
class DuplicateMember:
    entry_id: str
    source: MapSource
    title: str
    author: str
    path: str
    posted_date: datetime
    indexed: datetime
    metadata: LevelMetadata

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.entry_id,
            "source": self.source.value,
            "title": self.title,
            "author": self.author,
            "path": self.path,
            "postedDate": format_timestamp(self.posted_date),
        }


@dataclass(frozen=True)
class DuplicateGroup:
    content_hash: str
    file_size: int
    members: tuple[DuplicateMember, ...]

    @property
    def cross_source(self) -> bool:
        return len({member.source for member in self.members}) >= 2

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.content_hash,
            "fileSize": self.file_size,
            "crossSource": self.cross_source,
            "levels": [member.to_dict() for member in self.members],
        }


@dataclass(frozen=True)
class CatalogIssue:
    entry_id: str
    kind: str
    path: str
    message: str


@dataclass(frozen=True)
class CrawlResult:
    source: MapSource
    success: bool
    processed_count: int
    skipped_count: int
    failed_count: int
    errors: tuple[str, ...]
    duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source.value,
            "success": self.success,
            "processedCount": self.processed_count,
            "skippedCount": self.skipped_count,
            "failedCount": self.failed_count,
            "errors": list(self.errors),
            "durationMs": self.duration_ms,
        }
