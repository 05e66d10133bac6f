"""Infrastructure adapters for level indexing."""

from src.mapindex.infrastructure.api_event_sink import ApiEventJsonlSink
from src.mapindex.infrastructure.catalog_store import CatalogIndexStore
from src.mapindex.infrastructure.http_fetcher import RetryingFetcher
from src.mapindex.infrastructure.state_store import CrawlStateStore
from src.mapindex.infrastructure.zip_stream import StreamingZipExtractor

__all__ = [
    "ApiEventJsonlSink",
    "CatalogIndexStore",
    "CrawlStateStore",
    "RetryingFetcher",
    "StreamingZipExtractor",
]
