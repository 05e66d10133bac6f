from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

import aiohttp
from src.config.logger_config import logger
from src.config.settings import IndexerSettings, load_settings

from src.mapindex.application.ports import SourceAdapterPort
from src.mapindex.application.workflows.traverse_source import SourceTraversalWorkflow, TraversalConfig
from src.mapindex.domain.models import CatalogIssue, CrawlResult, MapSource
from src.mapindex.infrastructure.adapters.discord import DiscordAdapter
from src.mapindex.infrastructure.adapters.hognose import HognoseAdapter
from src.mapindex.infrastructure.adapters.internet_archive import InternetArchiveAdapter
from src.mapindex.infrastructure.api_event_sink import ApiEventJsonlSink
from src.mapindex.infrastructure.catalog_store import CatalogIndexStore
from src.mapindex.infrastructure.entry_builder import EntryMaterializer
from src.mapindex.infrastructure.http_fetcher import FetcherConfig, FetchError, RetryingFetcher
from src.mapindex.infrastructure.state_store import CrawlStateStore
from src.mapindex.infrastructure.token_provider import StaticTokenProvider

USER_AGENT = "mapindex/0.1"


def _cache_dir(output_dir: Path) -> Path:
    return output_dir / ".cache"


def build_adapter(
    source: MapSource,
    fetcher: RetryingFetcher,
    settings: IndexerSettings,
    token_provider: StaticTokenProvider | None = None,
) -> SourceAdapterPort:
    if source is MapSource.INTERNET_ARCHIVE:
        return InternetArchiveAdapter(
            fetcher,
            settings.archive_queries,
            metadata_cache_dir=_cache_dir(settings.output_dir) / "archive-metadata",
        )
    if source is MapSource.HOGNOSE:
        return HognoseAdapter(fetcher, settings.hognose_repo)
    channels = (
        settings.discord_community_channels
        if source is MapSource.DISCORD_COMMUNITY
        else settings.discord_archive_channels
    )
    if token_provider is None:
        raise ValueError(f"{source.value} needs a token provider")
    return DiscordAdapter(
        fetcher,
        channels,
        source,
        token_provider,
        channel_names=settings.discord_channel_names,
        excluded_threads=settings.discord_excluded_threads,
    )


async def _replace_outdated_hognose(
    adapter: HognoseAdapter,
    state: CrawlStateStore,
    catalog: CatalogIndexStore,
) -> None:
    """Drop previous Hognose levels once a new release tag appears."""
    await adapter.authenticate()
    try:
        latest = await adapter.latest_release()
    except FetchError as exc:
        logger.warning("Could not look up the latest Hognose release: {}", exc)
        return
    if latest is None:
        return
    state.load()
    if state.is_record_processed(latest.record_id) or not catalog.get_by_source(MapSource.HOGNOSE):
        return
    logger.info("New Hognose release {}; replacing existing levels", latest.extra.get("tag_name"))
    catalog.clear_source(MapSource.HOGNOSE)
    catalog.save()
    state.clear()


async def _crawl_source(
    source: MapSource,
    session: aiohttp.ClientSession,
    catalog: CatalogIndexStore,
    settings: IndexerSettings,
    workflow_config: TraversalConfig,
    event_sink: ApiEventJsonlSink,
    replace_existing: bool,
) -> CrawlResult:
    fetcher = RetryingFetcher(
        session,
        FetcherConfig(
            retries=settings.retry_attempts,
            timeout_seconds=float(settings.request_timeout_seconds),
        ),
        headers={"User-Agent": USER_AGENT},
        event_sink=event_sink,
    )
    token_provider = None
    if source in (MapSource.DISCORD_COMMUNITY, MapSource.DISCORD_ARCHIVE):
        token_provider = StaticTokenProvider(
            token=settings.discord_token,
            cache_dir=_cache_dir(settings.output_dir),
        )
    adapter = build_adapter(source, fetcher, settings, token_provider)
    state = CrawlStateStore.for_source(settings.output_dir, source)
    materializer = EntryMaterializer(
        settings.output_dir,
        adapter,
        fetcher,
        verify_archives=workflow_config.verify_archives,
    )
    workflow = SourceTraversalWorkflow(
        adapter=adapter,
        state=state,
        catalog=catalog,
        materializer=materializer,
        config=workflow_config,
        token_provider=token_provider,
    )
    try:
        if replace_existing and isinstance(adapter, HognoseAdapter) and adapter.latest_only:
            await _replace_outdated_hognose(adapter, state, catalog)
        return await workflow.run()
    finally:
        await state.aclose()


async def run_crawl_async(
    source: MapSource,
    *,
    settings: IndexerSettings | None = None,
    workflow_config: TraversalConfig | None = None,
    show_progress: bool = True,
    replace_existing: bool = True,
) -> CrawlResult:
    results = await run_all_async(
        (source,),
        settings=settings,
        workflow_config=workflow_config,
        show_progress=show_progress,
        replace_existing=replace_existing,
    )
    return results[0]


def run_crawl(
    source: MapSource,
    *,
    settings: IndexerSettings | None = None,
    workflow_config: TraversalConfig | None = None,
    show_progress: bool = True,
    replace_existing: bool = True,
) -> CrawlResult:
    return asyncio.run(
        run_crawl_async(
            source,
            settings=settings,
            workflow_config=workflow_config,
            show_progress=show_progress,
            replace_existing=replace_existing,
        )
    )


async def run_all_async(
    sources: tuple[MapSource, ...] | list[MapSource] = tuple(MapSource),
    *,
    settings: IndexerSettings | None = None,
    workflow_config: TraversalConfig | None = None,
    show_progress: bool = True,
    replace_existing: bool = True,
) -> list[CrawlResult]:
    """Crawl ``sources`` concurrently; each keeps its own state file, all share one catalog."""
    settings = settings or load_settings()
    config = (
        replace(workflow_config, show_progress=show_progress)
        if workflow_config is not None
        else TraversalConfig(max_concurrency=settings.max_concurrency, show_progress=show_progress)
    )
    output_dir = Path(settings.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    run_id = _build_run_id()

    catalog = CatalogIndexStore(output_dir)
    catalog.load()
    event_sink = ApiEventJsonlSink(output_dir / "raw", run_id=run_id)
    connector = aiohttp.TCPConnector(limit=0, limit_per_host=10, ttl_dns_cache=300)
    try:
        async with aiohttp.ClientSession(connector=connector) as session:
            results = await asyncio.gather(
                *(
                    _crawl_source(source, session, catalog, settings, config, event_sink, replace_existing)
                    for source in sources
                )
            )
    finally:
        event_sink.close()
        catalog.save()
        logger.info("API calls this run: {} (log: {})", event_sink.summary(), event_sink.file_path)

    for result in results:
        logger.info("{}: {}", result.source.value, result.to_dict())
    return list(results)


def run_all(
    sources: tuple[MapSource, ...] | list[MapSource] = tuple(MapSource),
    *,
    settings: IndexerSettings | None = None,
    workflow_config: TraversalConfig | None = None,
    show_progress: bool = True,
) -> list[CrawlResult]:
    return asyncio.run(
        run_all_async(sources, settings=settings, workflow_config=workflow_config, show_progress=show_progress)
    )


def rebuild_catalog(output_dir: str | Path | None = None) -> int:
    catalog = CatalogIndexStore(output_dir or load_settings().output_dir)
    return catalog.rebuild()


def validate_catalog(output_dir: str | Path | None = None) -> list[CatalogIssue]:
    catalog = CatalogIndexStore(output_dir or load_settings().output_dir)
    catalog.load()
    return catalog.validate()


def export_catalog(fmt: str = "json", output_dir: str | Path | None = None) -> Path:
    catalog = CatalogIndexStore(output_dir or load_settings().output_dir)
    catalog.load()
    return catalog.export(fmt)


def merge_duplicates(output_dir: str | Path | None = None) -> int:
    catalog = CatalogIndexStore(output_dir or load_settings().output_dir)
    catalog.load()
    merged = catalog.merge_duplicates()
    if merged:
        catalog.save()
    return len(merged)


def _build_run_id() -> str:
    return datetime.now(timezone.utc).strftime("mapindex_%Y%m%dT%H%M%S%fZ")
