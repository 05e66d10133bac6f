from pathlib import PurePosixPath
from typing import Any

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
)
from src.mapindex.domain.rules import classify_attachments, format_version_for_source, title_from_filename
from src.mapindex.infrastructure.http_fetcher import RetryingFetcher

GITHUB_API_BASE = "https://api.github.com"
RELEASES_PER_PAGE = 30
HOGNOSE_AUTHOR = "Hognose"


class HognoseAdapter:
    """Releases of the Hognose level generator on GitHub.

    Each release is one record; its zip assets are map packs.
    """

    source = MapSource.HOGNOSE
    newest_first = True

    def __init__(
        self,
        fetcher: RetryingFetcher,
        repo: str,
        latest_only: bool = True,
        api_base: str = GITHUB_API_BASE,
    ) -> None:
        self.fetcher = fetcher
        self.repo = repo
        self.latest_only = latest_only
        self.api_base = api_base.rstrip("/")

    async def authenticate(self) -> None:
        self.fetcher.set_header("Accept", "application/vnd.github+json")

    async def resolve_collections(self) -> list[Collection]:
        return [Collection(collection_id=f"github:{self.repo}", name=f"{self.repo} releases")]

    async def expand_collection(self, collection: Collection) -> list[Collection]:
        return [collection]

    async def list_page(self, collection: Collection, cursor: str | None) -> Page:
        page_number = int(cursor) if cursor else 1
        per_page = 1 if self.latest_only else RELEASES_PER_PAGE
        payload = await self.fetcher.fetch_json(
            f"{self.api_base}/repos/{self.repo}/releases",
            {"per_page": str(per_page), "page": str(page_number)},
            operation="github_releases",
        )
        if not isinstance(payload, list):
            raise ResponseShapeError(f"Release listing of {self.repo} is not a list")
        records = tuple(self._decode_release(item, collection) for item in payload)
        has_more = not self.latest_only and len(payload) >= per_page
        logger.info("Found {} Hognose releases on page {}", len(records), page_number)
        return Page(
            items=records,
            next_cursor=str(page_number + 1) if has_more else None,
            has_more=has_more,
        )

    async def latest_release(self) -> Record | None:
        page = await self.list_page(
            Collection(collection_id=f"github:{self.repo}", name=self.repo),
            None,
        )
        return page.items[0] if page.items else None

    async def resolve_record(self, record: Record) -> Record:
        return record

    def classify_record(self, record: Record) -> RecordClassification:
        return classify_attachments(record.attachments)

    def build_metadata(self, record: Record, artifact_name: str, entry_id: str) -> LevelMetadata:
        tag_name = str(record.extra.get("tag_name") or record.record_id)
        return LevelMetadata(
            id=entry_id,
            title=title_from_filename(artifact_name),
            author=HOGNOSE_AUTHOR,
            source=self.source,
            posted_date=record.timestamp,
            description=record.content or f"Level from Hognose release {tag_name}",
            tags=["hognose", "github-release", tag_name],
            source_url=f"https://github.com/{self.repo}/releases/tag/{tag_name}",
            original_id=f"{tag_name}/{PurePosixPath(artifact_name).name}",
            format_version=format_version_for_source(self.source),
            release_id=tag_name,
        )

    @staticmethod
    def _decode_release(item: Any, collection: Collection) -> Record:
        if not isinstance(item, dict) or item.get("id") is None or not item.get("tag_name"):
            raise ResponseShapeError("Malformed GitHub release entry")
        published = item.get("published_at") or item.get("created_at")
        try:
            timestamp = parse_timestamp(published)
        except ValueError as exc:
            raise ResponseShapeError(f"Release {item['tag_name']} has no usable date") from exc
        attachments = []
        for asset in item.get("assets") or []:
            if not isinstance(asset, dict) or not asset.get("name") or not asset.get("browser_download_url"):
                continue
            digest = str(asset.get("digest") or "")
            attachments.append(
                Attachment(
                    filename=str(asset["name"]),
                    url=str(asset["browser_download_url"]),
                    size=int(asset.get("size") or 0),
                    sha256=digest[len("sha256:") :] if digest.startswith("sha256:") else None,
                )
            )
        return Record(
            record_id=str(item["id"]),
            author=HOGNOSE_AUTHOR,
            timestamp=timestamp,
            collection_id=collection.collection_id,
            content=str(item.get("body") or ""),
            attachments=tuple(attachments),
            title=str(item.get("name") or item["tag_name"]),
            extra={"tag_name": str(item["tag_name"])},
        )
