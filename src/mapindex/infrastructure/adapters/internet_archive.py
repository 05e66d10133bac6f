import json
import time
from collections.abc import Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any
from urllib.parse import quote

from bs4 import BeautifulSoup
from src.config.logger_config import logger

from src.mapindex.domain.models import (
    Attachment,
    Collection,
    LevelMetadata,
    MapSource,
    Page,
    Record,
    RecordClassification,
    ResponseShapeError,
    parse_timestamp,
    utc_now,
)
from src.mapindex.domain.rules import (
    classify_attachments,
    extract_hashtags,
    format_version_for_source,
    is_primary_name,
    sanitize_filename,
    title_from_filename,
)
from src.mapindex.infrastructure.http_fetcher import HttpStatusError, RetryingFetcher

ARCHIVE_BASE = "https://archive.org"
SCRAPE_PAGE_SIZE = 100
SCRAPE_FIELDS = "identifier,title,creator,date,description,mediatype,downloads,item_size,collection"
DEFAULT_CACHE_EXPIRY_SECONDS = 86400
IA_THUMBNAIL = "__ia_thumb.jpg"


@dataclass(frozen=True)
class DateRange:
    start: str
    end: str


def html_to_text(value: Any) -> str:
    if isinstance(value, list):
        value = "\n".join(str(part) for part in value)
    if not value:
        return ""
    return BeautifulSoup(str(value), "html.parser").get_text(" ", strip=True)


def _first_text(value: Any) -> str:
    if isinstance(value, list):
        return str(value[0]) if value else ""
    return str(value or "")


def score_image(name: str, size: int) -> tuple[bool, int]:
    """Return (is_thumbnail, score) for an item image; higher scores are preferred."""
    lower = name.lower()
    if "_thumb" in lower or lower == IA_THUMBNAIL:
        return True, 1 if lower == IA_THUMBNAIL else 10
    if "screenshot" in lower:
        score = 100
    elif lower.endswith(".png"):
        score = 50
    elif "screen" in lower or "preview" in lower:
        score = 30
    else:
        score = 10
    if size > 1_000_000:
        score += 10
    return False, score


def pick_images(files: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    """Best screenshot first, then best thumbnail."""
    best: dict[bool, tuple[int, dict[str, Any]]] = {}
    for item in files:
        name = str(item.get("name") or "")
        if not name.lower().endswith((".png", ".jpg", ".jpeg")):
            continue
        is_thumb, score = score_image(name, int(item.get("size") or 0))
        current = best.get(is_thumb)
        if current is None or score > current[0]:
            best[is_thumb] = (score, item)
    return [best[key][1] for key in (False, True) if key in best]


class InternetArchiveAdapter:
    """Search results of the Internet Archive, one record per archive item.

    The scrape API returns an opaque ``cursor`` per page. Item file lists come
    from the metadata API and are cached on disk for ``cache_expiry_seconds``.
    """

    source = MapSource.INTERNET_ARCHIVE
    newest_first = False

    def __init__(
        self,
        fetcher: RetryingFetcher,
        queries: Sequence[str],
        date_range: DateRange | None = None,
        metadata_cache_dir: str | Path | None = None,
        cache_expiry_seconds: int = DEFAULT_CACHE_EXPIRY_SECONDS,
        base_url: str = ARCHIVE_BASE,
    ) -> None:
        if not queries:
            raise ValueError("InternetArchiveAdapter needs at least one query")
        self.fetcher = fetcher
        self.queries = tuple(queries)
        self.date_range = date_range
        self.metadata_cache_dir = Path(metadata_cache_dir) if metadata_cache_dir else None
        self.cache_expiry_seconds = cache_expiry_seconds
        self.base_url = base_url.rstrip("/")

    @property
    def query(self) -> str:
        text = " OR ".join(self.queries)
        if self.date_range is not None:
            text += f" AND date:[{self.date_range.start} TO {self.date_range.end}]"
        return text

    async def authenticate(self) -> None:
        return None

    async def resolve_collections(self) -> list[Collection]:
        return [Collection(collection_id=f"search:{self.query}", name="Internet Archive search")]

    async def expand_collection(self, collection: Collection) -> list[Collection]:
        return [collection]

    async def list_page(self, collection: Collection, cursor: str | None) -> Page:
        params = {
            "q": self.query,
            "count": str(SCRAPE_PAGE_SIZE),
            "fields": SCRAPE_FIELDS,
            "sorts": "downloads desc",
        }
        if cursor:
            params["cursor"] = cursor
        payload = await self.fetcher.fetch_json(
            f"{self.base_url}/services/search/v1/scrape",
            params,
            operation="archive_scrape",
        )
        if not isinstance(payload, dict) or not isinstance(payload.get("items", []), list):
            raise ResponseShapeError("Scrape response has no item list")
        records = tuple(self._decode_item(item, collection) for item in payload.get("items") or [])
        next_cursor = payload.get("cursor") or None
        return Page(items=records, next_cursor=next_cursor, has_more=bool(next_cursor))

    async def resolve_record(self, record: Record) -> Record:
        details = await self.fetch_item_details(record.record_id)
        if details is None:
            return replace(record, attachments=())
        files = details.get("files") or []
        if not isinstance(files, list):
            raise ResponseShapeError(f"Item {record.record_id} has a malformed file list")
        levels = [item for item in files if isinstance(item, dict) and is_primary_name(str(item.get("name") or ""))]
        if not levels:
            return replace(record, attachments=())
        chosen = levels + pick_images([item for item in files if isinstance(item, dict)])
        attachments = tuple(
            Attachment(
                filename=str(item["name"]),
                url=self.download_url(record.record_id, str(item["name"])),
                size=int(item.get("size") or 0),
            )
            for item in chosen
        )
        extra = {**record.extra, "level_count": len(levels)}
        return replace(record, attachments=attachments, extra=extra)

    def classify_record(self, record: Record) -> RecordClassification:
        return classify_attachments(record.attachments)

    def build_metadata(self, record: Record, artifact_name: str, entry_id: str) -> LevelMetadata:
        title = record.title or title_from_filename(artifact_name)
        if int(record.extra.get("level_count") or 1) > 1:
            title = f"{title} - {title_from_filename(artifact_name)}"
        return LevelMetadata(
            id=entry_id,
            title=title,
            author=record.author,
            source=self.source,
            posted_date=record.timestamp,
            description=record.content,
            tags=self._tags(record),
            source_url=f"{self.base_url}/details/{record.record_id}",
            original_id=record.record_id,
            format_version=format_version_for_source(self.source),
            download_count=record.extra.get("downloads"),
        )

    def download_url(self, identifier: str, filename: str) -> str:
        return f"{self.base_url}/download/{identifier}/{quote(filename)}"

    async def fetch_item_details(self, identifier: str) -> dict[str, Any] | None:
        cached = self._read_cache(identifier)
        if cached is not None:
            logger.debug("Using cached metadata for {}", identifier)
            return cached
        try:
            payload = await self.fetcher.fetch_json(
                f"{self.base_url}/metadata/{quote(identifier)}",
                operation="archive_metadata",
            )
        except HttpStatusError as exc:
            if exc.status == 404:
                logger.warning("Item not found: {}", identifier)
                return None
            raise
        if not isinstance(payload, dict):
            raise ResponseShapeError(f"Metadata of {identifier} is not an object")
        if not payload:
            return None
        self._write_cache(identifier, payload)
        return payload

    def _decode_item(self, item: Any, collection: Collection) -> Record:
        if not isinstance(item, dict) or not item.get("identifier"):
            raise ResponseShapeError("Scrape item without identifier")
        try:
            posted = parse_timestamp(_first_text(item.get("date")))
        except ValueError:
            posted = utc_now()
        downloads = item.get("downloads")
        return Record(
            record_id=str(item["identifier"]),
            author=_first_text(item.get("creator")) or "Unknown",
            timestamp=posted,
            collection_id=collection.collection_id,
            content=html_to_text(item.get("description")),
            title=_first_text(item.get("title")) or None,
            extra={
                "mediatype": item.get("mediatype"),
                "collection": item.get("collection") or [],
                "downloads": int(downloads) if isinstance(downloads, (int, float)) else None,
                "item_size": item.get("item_size"),
            },
        )

    @staticmethod
    def _tags(record: Record) -> list[str]:
        tags = ["archive", "internet-archive"]
        candidates: list[str] = []
        if record.extra.get("mediatype"):
            candidates.append(str(record.extra["mediatype"]))
        collections = record.extra.get("collection") or []
        if isinstance(collections, str):
            collections = [collections]
        candidates.extend(str(item) for item in collections)
        candidates.extend(extract_hashtags(record.content))
        for tag in candidates:
            if tag and tag not in tags:
                tags.append(tag)
        return tags

    def _cache_file(self, identifier: str) -> Path | None:
        if self.metadata_cache_dir is None:
            return None
        return self.metadata_cache_dir / f"{sanitize_filename(identifier)}.json"

    def _read_cache(self, identifier: str) -> dict[str, Any] | None:
        path = self._cache_file(identifier)
        if path is None or not path.is_file():
            return None
        try:
            if time.time() - path.stat().st_mtime > self.cache_expiry_seconds:
                logger.debug("Cache expired for {}", identifier)
                return None
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read cache for {}: {}", identifier, exc)
            return None
        return payload if isinstance(payload, dict) else None

    def _write_cache(self, identifier: str, payload: dict[str, Any]) -> None:
        path = self._cache_file(identifier)
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to cache metadata for {}: {}", identifier, exc)
