from datetime import datetime
from typing import Protocol, Sequence, runtime_checkable

from src.mapindex.application.contracts import TokenInfo
from src.mapindex.domain.dedup import ContentDedupIndex
from src.mapindex.domain.models import (
    CanonicalEntry,
    Collection,
    LevelMetadata,
    MapSource,
    Page,
    Record,
    RecordClassification,
)


@runtime_checkable
class SourceAdapterPort(Protocol):
    source: MapSource
    # Pages arrive newest record first, so a fully known page ends traversal.
    newest_first: bool

    async def authenticate(self) -> None:
        """Acquire or refresh whatever credentials the remote API needs."""

    async def resolve_collections(self) -> Sequence[Collection]: ...

    async def expand_collection(self, collection: Collection) -> Sequence[Collection]:
        """Enumerate archived then active sub-collections of a hierarchical collection."""

    async def list_page(self, collection: Collection, cursor: str | None) -> Page: ...

    async def resolve_record(self, record: Record) -> Record:
        """Fill in attachments that the listing does not carry."""

    def classify_record(self, record: Record) -> RecordClassification: ...

    def build_metadata(self, record: Record, artifact_name: str, entry_id: str) -> LevelMetadata: ...


@runtime_checkable
class TokenProviderPort(Protocol):
    async def get_token(self) -> TokenInfo: ...

    def clear_cache(self) -> None: ...


@runtime_checkable
class StatePort(Protocol):
    def load(self) -> bool: ...

    def is_record_processed(self, record_id: str) -> bool: ...

    def mark_record_processed(self, record_id: str) -> None: ...

    def get_canonical_for_hash(self, content_hash: str) -> str | None: ...

    def mark_hash_processed(self, content_hash: str, entry_id: str) -> None: ...

    def record_failure(self, record_id: str, message: str) -> None: ...

    def should_retry(self, record_id: str) -> bool: ...

    def clear_failure(self, record_id: str) -> None: ...

    def get_cursor(self, collection_id: str) -> datetime | None: ...

    def set_cursor(self, collection_id: str, timestamp: datetime) -> None: ...

    def flush(self) -> bool: ...

    def clear(self) -> None: ...


@runtime_checkable
class CatalogPort(Protocol):
    def add(self, entry: CanonicalEntry) -> bool: ...

    def remove(self, entry_id: str) -> bool: ...

    def get_by_source(self, source: MapSource) -> list[CanonicalEntry]: ...

    def save(self) -> None: ...

    def hash_index(self) -> ContentDedupIndex: ...
