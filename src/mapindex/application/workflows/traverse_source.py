import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TypeVar

from tqdm import tqdm
from src.config.logger_config import logger

from src.mapindex.application.contracts import MaterializedEntry, RecordOutcome
from src.mapindex.application.ports import CatalogPort, SourceAdapterPort, StatePort, TokenProviderPort
from src.mapindex.domain.association import RecentRecordCache
from src.mapindex.domain.dedup import ContentDedupIndex
from src.mapindex.domain.models import (
    Attachment,
    Collection,
    CollectionShape,
    CrawlResult,
    Record,
    ResponseShapeError,
)
from src.mapindex.domain.rules import is_image_name
from src.mapindex.infrastructure.entry_builder import EntryMaterializer
from src.mapindex.infrastructure.http_fetcher import AuthError, FetchError

T = TypeVar("T")


@dataclass(frozen=True)
class TraversalConfig:
    max_concurrency: int = 5
    record_cap: int = 10_000
    association_window_seconds: float = 300.0
    association_cache_size: int = 500
    skip_existing: bool = True
    verify_archives: bool = False
    show_progress: bool = True


class CrawlAborted(Exception):
    """Raised internally when the crawl cannot continue at all."""


class SourceTraversalWorkflow:
    """Crawl one source: resolve collections, page through them, materialize levels.

    Pages of a collection are fetched one after another because each cursor
    comes from the previous page. Records of a page are materialized
    concurrently; state, dedup and catalog updates then run in a single pass.
    """

    def __init__(
        self,
        adapter: SourceAdapterPort,
        state: StatePort,
        catalog: CatalogPort,
        materializer: EntryMaterializer,
        config: TraversalConfig | None = None,
        token_provider: TokenProviderPort | None = None,
    ) -> None:
        self.adapter = adapter
        self.state = state
        self.catalog = catalog
        self.materializer = materializer
        self.config = config or TraversalConfig()
        self.token_provider = token_provider
        self._semaphore = asyncio.Semaphore(self.config.max_concurrency)
        self._cache = RecentRecordCache(self.config.association_cache_size)
        self._claimed_images: dict[str, set[str]] = {}
        self._global_hashes = ContentDedupIndex({})
        self._reauthenticated = False
        self._processed = 0
        self._skipped = 0
        self._failed = 0
        self._errors: list[str] = []

    async def run(self) -> CrawlResult:
        started = time.monotonic()
        success = True
        source = self.adapter.source
        logger.info("Starting {} crawl", source.value)
        try:
            self.state.load()
            self._global_hashes = self.catalog.hash_index()
            await self._authenticate()
            collections = await self._resolve_collections()
            for collection in collections:
                await self._traverse(collection)
        except CrawlAborted as exc:
            success = False
            self._errors.append(str(exc))
            logger.error("{} crawl aborted: {}", source.value, exc)
        finally:
            self.state.flush()
            self.catalog.save()

        result = CrawlResult(
            source=source,
            success=success,
            processed_count=self._processed,
            skipped_count=self._skipped,
            failed_count=self._failed,
            errors=tuple(self._errors),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(
            "{} crawl finished: {} new, {} skipped, {} failed in {} ms",
            source.value,
            result.processed_count,
            result.skipped_count,
            result.failed_count,
            result.duration_ms,
        )
        return result

    async def _with_reauth(self, description: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except AuthError as exc:
            if self.token_provider is None or self._reauthenticated:
                raise CrawlAborted(f"Authentication failed during {description}: {exc}") from exc
            self._reauthenticated = True
            logger.warning("Authentication rejected during {}; refreshing token", description)

        self.token_provider.clear_cache()
        try:
            await self.adapter.authenticate()
            return await call()
        except AuthError as exc:
            raise CrawlAborted(f"Authentication still failing during {description}: {exc}") from exc

    async def _authenticate(self) -> None:
        try:
            await self._with_reauth("authentication", self.adapter.authenticate)
        except (FetchError, ResponseShapeError) as exc:
            raise CrawlAborted(f"Authentication request failed: {exc}") from exc

    async def _resolve_collections(self) -> Sequence[Collection]:
        try:
            collections = await self._with_reauth("collection resolution", self.adapter.resolve_collections)
        except (FetchError, ResponseShapeError) as exc:
            raise CrawlAborted(f"Collection resolution failed: {exc}") from exc
        logger.info("Resolved {} collections for {}", len(collections), self.adapter.source.value)
        return collections

    async def _traverse(self, collection: Collection) -> None:
        targets: Sequence[Collection] = [collection]
        if collection.shape is CollectionShape.HIERARCHICAL:
            try:
                targets = await self._with_reauth(
                    f"expanding {collection.name}",
                    lambda: self.adapter.expand_collection(collection),
                )
            except (FetchError, ResponseShapeError) as exc:
                raise CrawlAborted(f"Could not enumerate {collection.name}: {exc}") from exc
            logger.info("{} holds {} sub-collections", collection.name, len(targets))
        for target in targets:
            await self._traverse_flat(target)

    async def _traverse_flat(self, collection: Collection) -> None:
        cursor: str | None = None
        seen = 0
        newest: datetime | None = None
        complete = True
        held: list[Record] = []
        known_until = self.state.get_cursor(collection.collection_id)

        with tqdm(
            total=None,
            desc=collection.name[:40],
            unit=" record",
            leave=False,
            disable=not self.config.show_progress,
        ) as progress:
            try:
                while seen < self.config.record_cap:
                    try:
                        page = await self._with_reauth(
                            f"listing {collection.name}",
                            lambda: self.adapter.list_page(collection, cursor),
                        )
                    except ResponseShapeError as exc:
                        logger.warning("Malformed page in {}: {}", collection.name, exc)
                        self._errors.append(f"{collection.collection_id}: {exc}")
                        complete = False
                        break
                    except FetchError as exc:
                        logger.error("Could not fetch page of {}: {}", collection.name, exc)
                        self._errors.append(f"{collection.collection_id}: {exc}")
                        complete = False
                        break
                    except CrawlAborted:
                        raise
                    except Exception as exc:
                        logger.exception("Listing {} failed with {}: {}", collection.name, type(exc).__name__, exc)
                        self._errors.append(f"{collection.collection_id}: {type(exc).__name__}: {exc}")
                        complete = False
                        break

                    items = page.items[: self.config.record_cap - seen]
                    if not items:
                        break
                    seen += len(items)
                    covered = self._page_already_covered(items, known_until)
                    for record in items:
                        self._cache.add(record)
                        if newest is None or record.timestamp > newest:
                            newest = record.timestamp

                    more = bool(page.has_more and page.next_cursor) and not covered
                    ready, deferred = self._split_page_edge(items, more)
                    await self._process_page(held + ready)
                    held = deferred
                    progress.update(len(items))
                    self.catalog.save()

                    if covered:
                        logger.info("Reached already indexed history of {}", collection.name)
                        break
                    if not more:
                        break
                    cursor = page.next_cursor
                else:
                    logger.warning(
                        "Record cap {} reached for {}; stopping pagination",
                        self.config.record_cap,
                        collection.name,
                    )
                    complete = False

                if held:
                    await self._process_page(held)
                    self.catalog.save()
            finally:
                self._cache.clear(collection.collection_id)
                self._claimed_images.pop(collection.collection_id, None)

        if complete and newest is not None:
            self.state.set_cursor(collection.collection_id, newest)

    def _split_page_edge(self, items: Sequence[Record], more: bool) -> tuple[list[Record], list[Record]]:
        """Hold back records whose companions may still arrive on the next page.

        Pages run towards older records for newest-first sources and towards
        newer ones otherwise. Records within the association window of that
        edge wait until the next page is in the cache.
        """
        if not more:
            return list(items), []
        window = timedelta(seconds=self.config.association_window_seconds)
        if self.adapter.newest_first:
            edge = min(record.timestamp for record in items)
            near = [record.timestamp - edge <= window for record in items]
        else:
            edge = max(record.timestamp for record in items)
            near = [edge - record.timestamp <= window for record in items]
        ready = [record for record, close in zip(items, near) if not close]
        deferred = [record for record, close in zip(items, near) if close]
        return ready, deferred

    def _page_already_covered(self, items: Sequence[Record], known_until: datetime | None) -> bool:
        if not (self.adapter.newest_first and self.config.skip_existing and known_until is not None):
            return False
        return all(
            self.state.is_record_processed(record.record_id) and record.timestamp <= known_until
            for record in items
        )

    async def _process_page(self, items: Sequence[Record]) -> None:
        pending: list[Record] = []
        for record in items:
            if self.config.skip_existing and self.state.is_record_processed(record.record_id):
                self._skipped += 1
            elif not self.state.should_retry(record.record_id):
                logger.debug("Record {} is cooling down after a failure", record.record_id)
                self._skipped += 1
            else:
                pending.append(record)

        outcomes = await asyncio.gather(
            *(self._handle_record(record) for record in pending),
            return_exceptions=False,
        )
        for outcome in outcomes:
            self._apply(outcome)

    async def _handle_record(self, record: Record) -> RecordOutcome:
        async with self._semaphore:
            try:
                resolved = await self.adapter.resolve_record(record)
                classification = self.adapter.classify_record(resolved)
                if not classification.qualifies:
                    return RecordOutcome.ignored(resolved)
                associated = self._claim_images(resolved)
                result = await self.materializer.materialize(
                    resolved,
                    classification,
                    associated,
                    self._is_known,
                )
                return RecordOutcome.done(resolved, result)
            except ResponseShapeError as exc:
                logger.warning("Malformed record {}: {}", record.record_id, exc)
                return RecordOutcome.failed(record, str(exc))
            except (FetchError, OSError) as exc:
                logger.warning("Failed to materialize record {}: {}", record.record_id, exc)
                return RecordOutcome.failed(record, str(exc) or type(exc).__name__)
            except Exception as exc:
                logger.exception(
                    "Failed processing record {} with error type {}: {}",
                    record.record_id,
                    type(exc).__name__,
                    exc,
                )
                return RecordOutcome.failed(record, f"{type(exc).__name__}: {exc}")

    def _claim_images(self, record: Record) -> list[Attachment]:
        claimed = self._claimed_images.setdefault(record.collection_id, set())
        associated = [
            attachment
            for attachment in self._cache.find_associated(record, self.config.association_window_seconds)
            if attachment.url not in claimed and is_image_name(attachment.filename)
        ]
        claimed.update(attachment.url for attachment in associated)
        return associated

    def _is_known(self, key: str) -> bool:
        return self.state.get_canonical_for_hash(key) is not None or self._global_hashes.is_known(key) is not None

    def _apply(self, outcome: RecordOutcome) -> None:
        record_id = outcome.record.record_id
        if outcome.status == "ignored":
            self.state.mark_record_processed(record_id)
            return
        if outcome.status == "failed":
            self._fail(record_id, outcome.error or "unknown error")
            return

        result = outcome.result
        if result is None:
            return
        self._skipped += result.precheck_skipped
        for item in result.entries:
            self._accept(item)
        if result.error:
            self._fail(record_id, result.error)
        else:
            self.state.mark_record_processed(record_id)

    def _accept(self, item: MaterializedEntry) -> None:
        existing = self.state.get_canonical_for_hash(item.content_hash) or self._global_hashes.is_known(
            item.content_hash
        )
        if existing is not None and existing != item.entry.id:
            logger.info(
                "Discarding duplicate {} of level {} ({})",
                item.entry.metadata.title,
                existing,
                item.content_hash[:12],
            )
            self.materializer.discard(item)
            if item.locator_key:
                self.state.mark_hash_processed(item.locator_key, existing)
            self._skipped += 1
            return

        self.catalog.add(item.entry)
        self.state.mark_hash_processed(item.content_hash, item.entry.id)
        self._global_hashes.record(item.content_hash, item.entry.id)
        if item.locator_key:
            self.state.mark_hash_processed(item.locator_key, item.entry.id)
        self._processed += 1
        logger.info("Indexed level {} ({})", item.entry.metadata.title, item.entry.id)

    def _fail(self, record_id: str, message: str) -> None:
        self.state.record_failure(record_id, message)
        self._failed += 1
        self._errors.append(f"{record_id}: {message}")
