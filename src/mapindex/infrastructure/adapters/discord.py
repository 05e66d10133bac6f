from collections.abc import Sequence
from typing import Any

from src.config.logger_config import logger

from src.mapindex.application.ports import TokenProviderPort
from src.mapindex.domain.models import (
    Attachment,
    Collection,
    CollectionShape,
    LevelMetadata,
    MapSource,
    Page,
    Record,
    RecordClassification,
    ResponseShapeError,
    parse_timestamp,
)
from src.mapindex.domain.rules import (
    classify_attachments,
    format_version_for_source,
    format_version_from_filename,
    parse_author,
    title_from_filename,
)
from src.mapindex.infrastructure.http_fetcher import AuthError, FetchError, RetryingFetcher

DISCORD_API_BASE = "https://discord.com/api/v9"
FORUM_CHANNEL = 15
MESSAGE_CHANNELS = frozenset({0, 5})
MESSAGE_PAGE_LIMIT = 100
ARCHIVED_THREAD_LIMIT = 100
ACTIVE_THREAD_LIMIT = 25
UNKNOWN_CHANNEL = "unknown-channel"


class DiscordAdapter:
    """Channel and forum history of the community server.

    Text and news channels are flat message histories paged with
    ``before=<message id>``. Forum channels are hierarchical: archived threads
    are paged by archive timestamp, then active threads are listed once.
    """

    newest_first = True

    def __init__(
        self,
        fetcher: RetryingFetcher,
        channels: Sequence[str],
        source: MapSource,
        token_provider: TokenProviderPort,
        channel_names: dict[str, str] | None = None,
        excluded_threads: Sequence[str] = (),
        api_base: str = DISCORD_API_BASE,
    ) -> None:
        if source not in (MapSource.DISCORD_COMMUNITY, MapSource.DISCORD_ARCHIVE):
            raise ValueError(f"DiscordAdapter cannot index {source.value}")
        self.fetcher = fetcher
        self.channels = tuple(channels)
        self.source = source
        self.token_provider = token_provider
        self.channel_names = dict(channel_names or {})
        self.excluded_threads = frozenset(excluded_threads)
        self.api_base = api_base.rstrip("/")

    async def authenticate(self) -> None:
        info = await self.token_provider.get_token()
        self.fetcher.set_header("Authorization", info.token)
        if info.username:
            logger.info("Authenticated as Discord user: {}", info.username)

    async def resolve_collections(self) -> list[Collection]:
        collections: list[Collection] = []
        for channel_id in self.channels:
            payload = await self.fetcher.fetch_json(
                f"{self.api_base}/channels/{channel_id}",
                operation="discord_channel",
            )
            if not isinstance(payload, dict) or "type" not in payload:
                raise ResponseShapeError(f"Channel {channel_id} response is not a channel object")
            channel_type = payload.get("type")
            name = self.channel_names.get(channel_id) or str(payload.get("name") or channel_id)
            if channel_type == FORUM_CHANNEL:
                shape = CollectionShape.HIERARCHICAL
            elif channel_type in MESSAGE_CHANNELS:
                shape = CollectionShape.FLAT
            else:
                logger.warning("Skipping channel {} with unsupported type {}", channel_id, channel_type)
                continue
            collections.append(Collection(collection_id=channel_id, name=name, shape=shape))
        return collections

    async def expand_collection(self, collection: Collection) -> list[Collection]:
        threads: dict[str, Collection] = {}
        before: str | None = None
        while True:
            params = {"limit": str(ARCHIVED_THREAD_LIMIT)}
            if before:
                params["before"] = before
            payload = await self.fetcher.fetch_json(
                f"{self.api_base}/channels/{collection.collection_id}/threads/archived/public",
                params,
                operation="discord_archived_threads",
            )
            batch = self._decode_threads(payload, collection)
            for thread, _archived_at in batch:
                threads.setdefault(thread.collection_id, thread)
            logger.info("Found {} archived threads in this batch", len(batch))
            if not payload.get("has_more") or not batch:
                break
            before = batch[-1][1]

        try:
            payload = await self.fetcher.fetch_json(
                f"{self.api_base}/channels/{collection.collection_id}/threads/search",
                {"archived": "false", "limit": str(ACTIVE_THREAD_LIMIT)},
                operation="discord_active_threads",
            )
            active = self._decode_threads(payload, collection)
        except AuthError:
            raise
        except (FetchError, ResponseShapeError) as exc:
            logger.warning("Could not fetch active threads of {}: {}", collection.name, exc)
            active = []
        for thread, _archived_at in active:
            threads.setdefault(thread.collection_id, thread)
        logger.info("Found {} active threads via search", len(active))

        return [thread for thread_id, thread in threads.items() if thread_id not in self.excluded_threads]

    async def list_page(self, collection: Collection, cursor: str | None) -> Page:
        params = {"limit": str(MESSAGE_PAGE_LIMIT)}
        if cursor:
            params["before"] = cursor
        payload = await self.fetcher.fetch_json(
            f"{self.api_base}/channels/{collection.collection_id}/messages",
            params,
            operation="discord_messages",
        )
        if not isinstance(payload, list):
            raise ResponseShapeError(f"Message listing of {collection.collection_id} is not a list")
        records = tuple(self._decode_message(item, collection) for item in payload)
        return Page(
            items=records,
            next_cursor=records[-1].record_id if records else None,
            has_more=len(payload) >= MESSAGE_PAGE_LIMIT,
        )

    async def resolve_record(self, record: Record) -> Record:
        return record

    def classify_record(self, record: Record) -> RecordClassification:
        return classify_attachments(record.attachments)

    def build_metadata(self, record: Record, artifact_name: str, entry_id: str) -> LevelMetadata:
        channel_id = str(record.extra.get("channel_id") or record.collection_id)
        channel_name = self.channel_names.get(channel_id, UNKNOWN_CHANNEL)
        kind = "community" if self.source is MapSource.DISCORD_COMMUNITY else "archive"
        return LevelMetadata(
            id=entry_id,
            title=title_from_filename(artifact_name),
            author=parse_author(record.content, record.author),
            source=self.source,
            posted_date=record.timestamp,
            description=record.content or f"Level shared on Discord by {record.author}",
            tags=["discord", kind, f"discord-{channel_name}"],
            source_url=f"https://discord.com/channels/@me/{record.collection_id}/{record.record_id}",
            original_id=record.record_id,
            format_version=format_version_from_filename(artifact_name) or format_version_for_source(self.source),
            discord_channel_id=channel_id,
            discord_channel_name=channel_name,
        )

    def _decode_threads(self, payload: Any, parent: Collection) -> list[tuple[Collection, str | None]]:
        if not isinstance(payload, dict) or not isinstance(payload.get("threads"), list):
            raise ResponseShapeError(f"Thread listing of {parent.collection_id} has no thread list")
        threads: list[tuple[Collection, str | None]] = []
        for item in payload["threads"]:
            if not isinstance(item, dict) or not item.get("id"):
                raise ResponseShapeError(f"Malformed thread entry in {parent.collection_id}")
            archived_at = (item.get("thread_metadata") or {}).get("archive_timestamp")
            if isinstance(archived_at, str):
                archived_at = archived_at.replace("+00:00", "Z")
            thread = Collection(
                collection_id=str(item["id"]),
                name=str(item.get("name") or item["id"]),
                shape=CollectionShape.FLAT,
                parent_id=parent.collection_id,
            )
            threads.append((thread, archived_at))
        return threads

    @staticmethod
    def _decode_message(item: Any, collection: Collection) -> Record:
        if not isinstance(item, dict) or not item.get("id") or not item.get("timestamp"):
            raise ResponseShapeError(f"Malformed message in {collection.collection_id}")
        author = item.get("author") or {}
        if not isinstance(author, dict):
            raise ResponseShapeError(f"Message {item['id']} has a malformed author")
        attachments = tuple(
            Attachment(
                filename=str(att.get("filename") or ""),
                url=str(att.get("url") or ""),
                size=int(att.get("size") or 0),
            )
            for att in item.get("attachments") or []
            if isinstance(att, dict) and att.get("filename") and att.get("url")
        )
        try:
            timestamp = parse_timestamp(item["timestamp"])
        except ValueError as exc:
            raise ResponseShapeError(f"Message {item['id']} has a bad timestamp: {exc}") from exc
        return Record(
            record_id=str(item["id"]),
            author=str(author.get("username") or "Unknown"),
            timestamp=timestamp,
            collection_id=collection.collection_id,
            content=str(item.get("content") or ""),
            attachments=attachments,
            title=collection.name if collection.parent_id else None,
            extra={"channel_id": collection.parent_id or collection.collection_id},
        )
