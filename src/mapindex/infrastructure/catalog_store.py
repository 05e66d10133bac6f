import csv
import json
import os
import shutil
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, ClassVar

from src.config.logger_config import logger

from src.mapindex.domain.dedup import (
    ContentDedupIndex,
    DuplicateReport,
    build_duplicate_report,
    group_duplicates,
    merge_metadata,
)
from src.mapindex.domain.models import (
    CanonicalEntry,
    CatalogIssue,
    DuplicateGroup,
    MapSource,
    format_timestamp,
    utc_now,
)
from src.mapindex.domain.rules import source_levels_dir

INDEX_FILENAME = "catalog_index.json"
DESCRIPTOR_FILENAME = "catalog.json"
CSV_HEADER = ("ID", "Title", "Author", "Source", "Posted Date", "File Size", "Tags", "Description", "DAT File")


class CatalogConsistencyError(RuntimeError):
    pass


def _write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        tmp_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def descriptor_path(storage_path: str | Path) -> Path:
    return Path(storage_path) / DESCRIPTOR_FILENAME


def write_descriptor(entry: CanonicalEntry) -> Path:
    path = descriptor_path(entry.storage_path)
    _write_json_atomic(path, entry.to_dict())
    return path


def read_descriptor(path: str | Path) -> CanonicalEntry:
    return CanonicalEntry.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))


class CatalogIndexStore:
    """Global level index plus one mirrored index per source.

    Both views change together inside each mutation, and the totals are
    checked afterwards. Nothing is written until ``save()``.
    """

    INDEX_FILENAME: ClassVar[str] = INDEX_FILENAME

    def __init__(self, output_dir: str | Path) -> None:
        self.output_dir = Path(output_dir)
        self._reset()

    @property
    def index_path(self) -> Path:
        return self.output_dir / self.INDEX_FILENAME

    @property
    def entries(self) -> list[CanonicalEntry]:
        return list(self._entries)

    @property
    def total(self) -> int:
        return self._total

    def source_index_path(self, source: MapSource) -> Path:
        return self.output_dir / source_levels_dir(source) / self.INDEX_FILENAME

    def load(self) -> int:
        self._reset()
        if not self.index_path.exists():
            logger.info("No catalog index at {}; starting empty", self.index_path)
            return 0
        try:
            payload = json.loads(self.index_path.read_text(encoding="utf-8"))
            levels = [CanonicalEntry.from_dict(item) for item in payload.get("levels") or []]
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Catalog index {} is unreadable ({}); run a rebuild", self.index_path, exc)
            self._reset()
            return 0

        for entry in levels:
            self._upsert(entry)
        stored_total = payload.get("totalLevels")
        if stored_total is not None and stored_total != self._total:
            logger.warning("Catalog index declared {} levels but holds {}", stored_total, self._total)
        self._check_consistency()
        logger.info("Loaded catalog index with {} levels", self._total)
        return self._total

    def save(self) -> None:
        self._check_consistency()
        _write_json_atomic(self.index_path, self._payload(self._entries, self._counts))
        for source in MapSource:
            view = self._by_source[source]
            _write_json_atomic(self.source_index_path(source), self._payload(view, {source: len(view)}))
        logger.debug("Saved catalog index with {} levels to {}", self._total, self.index_path)

    def get(self, entry_id: str) -> CanonicalEntry | None:
        position = self._position(entry_id)
        return self._entries[position] if position is not None else None

    def add(self, entry: CanonicalEntry) -> bool:
        """Insert or replace ``entry`` by id; returns True when it was new."""
        created = self._upsert(entry)
        self._last_updated = utc_now()
        self._check_consistency()
        if created:
            logger.debug("Added level {} ({})", entry.metadata.title, entry.id)
        else:
            logger.debug("Updated level {} ({})", entry.metadata.title, entry.id)
        return created

    def remove(self, entry_id: str) -> bool:
        position = self._position(entry_id)
        if position is None:
            logger.warning("Level {} not found in catalog", entry_id)
            return False
        entry = self._entries.pop(position)
        self._by_source[entry.source] = [item for item in self._by_source[entry.source] if item.id != entry_id]
        self._counts[entry.source] -= 1
        self._total -= 1
        self._last_updated = utc_now()
        self._delete_storage(entry)
        self._check_consistency()
        logger.info("Removed level: {}", entry.metadata.title)
        return True

    def clear_source(self, source: MapSource) -> int:
        doomed = list(self._by_source[source])
        for entry in doomed:
            self._delete_storage(entry)
        self._entries = [entry for entry in self._entries if entry.source is not source]
        self._by_source[source] = []
        self._counts[source] = 0
        self._total -= len(doomed)
        self._last_updated = utc_now()
        self._check_consistency()
        logger.info("Cleared {} {} levels from catalog", len(doomed), source.value)
        return len(doomed)

    def rebuild(self, storage_roots: Iterable[str | Path] | None = None) -> int:
        """Re-derive the index from per-entry descriptors on disk and save it."""
        logger.info("Rebuilding catalog index from level directories...")
        self._reset()
        roots = (
            [Path(root) for root in storage_roots]
            if storage_roots is not None
            else [self.output_dir / source_levels_dir(source) for source in MapSource]
        )
        for root in roots:
            if not root.is_dir():
                continue
            for level_dir in sorted(child for child in root.iterdir() if child.is_dir()):
                path = descriptor_path(level_dir)
                if not path.is_file():
                    logger.debug("No descriptor in {}; skipping", level_dir)
                    continue
                try:
                    entry = read_descriptor(path)
                except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
                    logger.debug("Unparsable descriptor {}: {}", path, exc)
                    continue
                self._upsert(entry)
        self._check_consistency()
        self.save()
        logger.info("Rebuilt catalog index with {} levels", self._total)
        return self._total

    def validate(self) -> list[CatalogIssue]:
        issues: list[CatalogIssue] = []
        for entry in self._entries:
            storage = Path(entry.storage_path)
            if not storage.is_dir():
                issues.append(CatalogIssue(entry.id, "missing_directory", str(storage), "Level directory missing"))
                continue
            descriptor = descriptor_path(storage)
            if not descriptor.is_file():
                issues.append(CatalogIssue(entry.id, "missing_descriptor", str(descriptor), "Descriptor missing"))
            for item in entry.files:
                if not Path(item.path).is_file():
                    issues.append(
                        CatalogIssue(entry.id, "missing_file", item.path, f"File missing: {item.filename}")
                    )
        if issues:
            logger.warning("Catalog validation found {} issues", len(issues))
        else:
            logger.info("Catalog validation passed")
        return issues

    def export(self, fmt: str = "json") -> Path:
        if fmt not in ("json", "csv"):
            raise ValueError(f"Unsupported export format: {fmt}")
        output_path = self.output_dir / f"catalog_export.{fmt}"
        if fmt == "json":
            _write_json_atomic(output_path, self._payload(self._entries, self._counts))
        else:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            with output_path.open("w", encoding="utf-8", newline="") as handle:
                writer = csv.writer(handle, quoting=csv.QUOTE_ALL, lineterminator="\n")
                writer.writerow(CSV_HEADER)
                writer.writerows(self._csv_row(entry) for entry in self._entries)
        logger.info("Exported catalog to {}", output_path)
        return output_path

    def get_by_source(self, source: MapSource) -> list[CanonicalEntry]:
        return list(self._by_source[source])

    def get_duplicates(self) -> list[DuplicateGroup]:
        return group_duplicates(self._entries)

    def duplicate_report(self, now: datetime | None = None) -> DuplicateReport:
        return build_duplicate_report(self._entries, now)

    def merge_duplicates(self, now: datetime | None = None) -> list[CanonicalEntry]:
        """Fold what each duplicate group knows into its canonical entry.

        Only the canonical entries change; the other copies stay indexed and
        on disk. Returns the updated entries.
        """
        merged: list[CanonicalEntry] = []
        for group in self.get_duplicates():
            metadata = merge_metadata(group, now)
            current = self.get(metadata.id)
            if current is None or metadata == current.metadata:
                continue
            entry = replace(current, metadata=metadata, last_updated=now or utc_now())
            self._upsert(entry)
            write_descriptor(entry)
            merged.append(entry)
        if merged:
            self._last_updated = utc_now()
            self._check_consistency()
            logger.info("Merged metadata into {} canonical levels", len(merged))
        return merged

    def hash_index(self) -> ContentDedupIndex:
        mapping: dict[str, str] = {}
        for entry in self._entries:
            if entry.content_hash:
                mapping.setdefault(entry.content_hash, entry.id)
        return ContentDedupIndex(mapping)

    def stats(self) -> dict[str, Any]:
        return {
            "totalLevels": self._total,
            "sources": {source.value: count for source, count in self._counts.items()},
            "lastUpdated": format_timestamp(self._last_updated),
        }

    def recent(self, limit: int = 10) -> list[CanonicalEntry]:
        return sorted(self._entries, key=lambda entry: entry.metadata.posted_date, reverse=True)[:limit]

    def _reset(self) -> None:
        self._entries: list[CanonicalEntry] = []
        self._by_source: dict[MapSource, list[CanonicalEntry]] = {source: [] for source in MapSource}
        self._counts: dict[MapSource, int] = {source: 0 for source in MapSource}
        self._total = 0
        self._last_updated = utc_now()

    def _position(self, entry_id: str) -> int | None:
        for position, entry in enumerate(self._entries):
            if entry.id == entry_id:
                return position
        return None

    def _upsert(self, entry: CanonicalEntry) -> bool:
        position = self._position(entry.id)
        if position is not None:
            previous = self._entries[position]
            self._entries[position] = entry
            if previous.source is entry.source:
                view = self._by_source[entry.source]
                self._by_source[entry.source] = [entry if item.id == entry.id else item for item in view]
            else:
                self._by_source[previous.source] = [
                    item for item in self._by_source[previous.source] if item.id != entry.id
                ]
                self._counts[previous.source] -= 1
                self._by_source[entry.source].append(entry)
                self._counts[entry.source] += 1
            return False
        self._entries.append(entry)
        self._by_source[entry.source].append(entry)
        self._counts[entry.source] += 1
        self._total += 1
        return True

    def _check_consistency(self) -> None:
        per_source = sum(self._counts.values())
        if not (self._total == per_source == len(self._entries)):
            raise CatalogConsistencyError(
                f"Catalog totals diverged: total={self._total} per_source={per_source} entries={len(self._entries)}"
            )
        for source, view in self._by_source.items():
            if len(view) != self._counts[source]:
                raise CatalogConsistencyError(
                    f"Mirror for {source.value} holds {len(view)} levels, counter says {self._counts[source]}"
                )

    def _delete_storage(self, entry: CanonicalEntry) -> None:
        storage = Path(entry.storage_path)
        if storage.is_dir():
            shutil.rmtree(storage, ignore_errors=True)

    def _payload(self, entries: list[CanonicalEntry], counts: dict[MapSource, int]) -> dict[str, Any]:
        return {
            "totalLevels": len(entries),
            "sources": {source.value: count for source, count in counts.items()},
            "lastUpdated": format_timestamp(self._last_updated),
            "levels": [entry.to_dict() for entry in entries],
        }

    def _csv_row(self, entry: CanonicalEntry) -> list[Any]:
        metadata = entry.metadata
        primary = entry.primary_file
        file_size = metadata.file_size or (primary.size if primary is not None else 0)
        dat_path = os.path.relpath(primary.path, self.output_dir) if primary is not None else ""
        return [
            metadata.id,
            metadata.title,
            metadata.author,
            metadata.source.value,
            format_timestamp(metadata.posted_date),
            file_size,
            ";".join(metadata.tags),
            metadata.description,
            dat_path,
        ]
