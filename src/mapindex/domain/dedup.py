import hashlib
from collections.abc import Iterable, MutableMapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from src.mapindex.domain.models import (
    CanonicalEntry,
    DuplicateGroup,
    DuplicateMember,
    LevelMetadata,
    MapSource,
    utc_now,
)
from src.mapindex.domain.rules import KNOWN_FORMAT_VERSIONS, is_placeholder_author

LOCATOR_PREFIX = "url:"
_HASH_CHUNK = 1 << 20
# Provenance tags stay with the copy that carries them.
SOURCE_TAGS = frozenset({"archive", "internet-archive", "discord", "community", "hognose", "github-release"})
_MERGE_FILL_FIELDS = ("format_version", "file_size")


def content_sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def file_sha256(path: str | Path) -> str:
    digest = hashlib.sha256()
    with Path(path).open("rb") as stream:
        for chunk in iter(lambda: stream.read(_HASH_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def locator_key(url: str) -> str:
    """Cheap pre-check key for a remote locator.

    Signed CDN query strings rotate between fetches, so only scheme, host and
    path take part in the key.
    """
    parts = urlsplit(url.strip())
    normalized = urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, "", ""))
    return LOCATOR_PREFIX + hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class ContentDedupIndex:
    """hash -> canonical entry id table."""

    def __init__(self, mapping: MutableMapping[str, str]) -> None:
        self._mapping = mapping

    def is_known(self, content_hash: str) -> str | None:
        return self._mapping.get(content_hash)

    def record(self, content_hash: str, entry_id: str) -> None:
        self._mapping[content_hash] = entry_id

    def __len__(self) -> int:
        return len(self._mapping)


def group_duplicates(entries: Iterable[CanonicalEntry]) -> list[DuplicateGroup]:
    buckets: dict[str, list[CanonicalEntry]] = {}
    for entry in entries:
        content_hash = entry.content_hash
        if not content_hash:
            continue
        buckets.setdefault(content_hash, []).append(entry)

    groups: list[DuplicateGroup] = []
    for content_hash, members in buckets.items():
        if len(members) < 2:
            continue
        primary = members[0].primary_file
        groups.append(
            DuplicateGroup(
                content_hash=content_hash,
                file_size=primary.size if primary is not None else 0,
                members=tuple(_to_member(entry) for entry in members),
            )
        )
    groups.sort(key=lambda group: len(group.members), reverse=True)
    return groups


def _to_member(entry: CanonicalEntry) -> DuplicateMember:
    primary = entry.primary_file
    return DuplicateMember(
        entry_id=entry.id,
        source=entry.source,
        title=entry.metadata.title,
        author=entry.metadata.author,
        path=primary.path if primary is not None else entry.storage_path,
        posted_date=entry.metadata.posted_date,
        indexed=entry.indexed,
        metadata=entry.metadata,
    )


def score_entry(member: DuplicateMember, now: datetime | None = None) -> int:
    now = now or utc_now()
    metadata = member.metadata
    score = 0
    if (metadata.description or "").strip():
        score += 2
    if metadata.tags:
        score += 1
    if not is_placeholder_author(metadata.author):
        score += 1
    if metadata.format_version in KNOWN_FORMAT_VERSIONS:
        score += 1
    if now - member.posted_date < timedelta(days=365):
        score += 1
    return score


def choose_canonical(group: DuplicateGroup, now: datetime | None = None) -> str:
    if not group.members:
        raise ValueError("duplicate group has no members")
    now = now or utc_now()
    ranked = sorted(
        enumerate(group.members),
        key=lambda item: (-score_entry(item[1], now), item[1].indexed, item[0]),
    )
    return ranked[0][1].entry_id


def _is_source_tag(tag: str) -> bool:
    return tag in SOURCE_TAGS or tag.startswith("discord-")


def merge_metadata(group: DuplicateGroup, now: datetime | None = None) -> LevelMetadata:
    """Enrich the canonical copy of ``group`` with what its duplicates know.

    The canonical member keeps its id, source, title and links. Tags from the
    other copies are appended, minus their provenance tags. The longest
    description and the earliest posted date win. Members are not modified.
    """
    canonical_id = choose_canonical(group, now)
    canonical = next(member for member in group.members if member.entry_id == canonical_id)
    others = [member for member in group.members if member.entry_id != canonical_id]
    base = canonical.metadata

    tags = list(base.tags)
    for member in others:
        for tag in member.metadata.tags:
            if tag not in tags and not _is_source_tag(tag):
                tags.append(tag)

    descriptions = [member.metadata.description.strip() for member in group.members]
    description = max(descriptions, key=len) if any(descriptions) else base.description

    author = base.author
    if is_placeholder_author(author):
        author = next(
            (member.metadata.author for member in others if not is_placeholder_author(member.metadata.author)),
            author,
        )

    filled = {
        name: next(
            (getattr(member.metadata, name) for member in others if getattr(member.metadata, name) is not None),
            None,
        )
        for name in _MERGE_FILL_FIELDS
        if getattr(base, name) is None
    }

    return replace(
        base,
        author=author,
        description=description,
        tags=tags,
        posted_date=min(member.metadata.posted_date for member in group.members),
        **filled,
    )


@dataclass
class SourceDuplicateStats:
    total: int = 0
    unique: int = 0
    duplicates: int = 0


@dataclass
class DuplicateReport:
    total_levels: int
    unique_levels: int
    groups: list[DuplicateGroup]
    recommendations: dict[str, str]
    by_source: dict[MapSource, SourceDuplicateStats] = field(default_factory=dict)

    @property
    def duplicate_count(self) -> int:
        return self.total_levels - self.unique_levels

    @property
    def cross_source_groups(self) -> int:
        return sum(1 for group in self.groups if group.cross_source)

    @property
    def within_source_groups(self) -> int:
        return len(self.groups) - self.cross_source_groups

    @property
    def largest_group(self) -> int:
        return max((len(group.members) for group in self.groups), default=0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalLevels": self.total_levels,
            "uniqueLevels": self.unique_levels,
            "duplicateCount": self.duplicate_count,
            "duplicateGroups": [
                {**group.to_dict(), "recommended": self.recommendations.get(group.content_hash)}
                for group in self.groups
            ],
            "statistics": {
                "bySource": {
                    source.value: {
                        "total": stats.total,
                        "unique": stats.unique,
                        "duplicates": stats.duplicates,
                    }
                    for source, stats in self.by_source.items()
                },
                "crossSourceDuplicates": self.cross_source_groups,
                "withinSourceDuplicates": self.within_source_groups,
                "largestDuplicateGroup": self.largest_group,
            },
        }


def build_duplicate_report(entries: Iterable[CanonicalEntry], now: datetime | None = None) -> DuplicateReport:
    entries = [entry for entry in entries if entry.content_hash]
    by_source = {source: SourceDuplicateStats() for source in MapSource}
    seen: set[str] = set()
    for entry in entries:
        stats = by_source[entry.source]
        stats.total += 1
        if entry.content_hash in seen:
            stats.duplicates += 1
        else:
            seen.add(entry.content_hash)

    groups = group_duplicates(entries)
    grouped_hashes = {group.content_hash for group in groups}
    for entry in entries:
        if entry.content_hash not in grouped_hashes:
            by_source[entry.source].unique += 1

    return DuplicateReport(
        total_levels=len(entries),
        unique_levels=len(seen),
        groups=groups,
        recommendations={group.content_hash: choose_canonical(group, now) for group in groups},
        by_source=by_source,
    )
