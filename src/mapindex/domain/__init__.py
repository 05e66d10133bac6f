"""Domain models and deterministic rules for level indexing."""

from src.mapindex.domain.association import RecentRecordCache
from src.mapindex.domain.dedup import (
    ContentDedupIndex,
    DuplicateReport,
    build_duplicate_report,
    choose_canonical,
    group_duplicates,
)
from src.mapindex.domain.models import (
    ArtifactFile,
    ArtifactKind,
    Attachment,
    CanonicalEntry,
    CrawlResult,
    LevelMetadata,
    MapSource,
    Record,
)

__all__ = [
    "ArtifactFile",
    "ArtifactKind",
    "Attachment",
    "build_duplicate_report",
    "CanonicalEntry",
    "choose_canonical",
    "ContentDedupIndex",
    "CrawlResult",
    "DuplicateReport",
    "group_duplicates",
    "LevelMetadata",
    "MapSource",
    "Record",
    "RecentRecordCache",
]
