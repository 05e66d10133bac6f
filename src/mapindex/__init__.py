"""Level indexing package."""

from src.mapindex.crawl import (
    export_catalog,
    merge_duplicates,
    rebuild_catalog,
    run_all,
    run_all_async,
    run_crawl,
    run_crawl_async,
    validate_catalog,
)
from src.mapindex.domain.models import CrawlResult, MapSource

__all__ = [
    "CrawlResult",
    "export_catalog",
    "MapSource",
    "merge_duplicates",
    "rebuild_catalog",
    "run_all",
    "run_all_async",
    "run_crawl",
    "run_crawl_async",
    "validate_catalog",
]
