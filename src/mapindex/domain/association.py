from collections import deque
from datetime import timedelta

from src.mapindex.domain.models import Attachment, Record
from src.mapindex.domain.rules import is_image_name

DEFAULT_CACHE_SIZE = 500
DEFAULT_WINDOW_SECONDS = 300


class RecentRecordCache:
    """Bounded per-collection memory of recently seen records.

    Used to pair a level file with screenshots the same author posted in a
    separate message shortly before or after it.
    """

    def __init__(self, max_records: int = DEFAULT_CACHE_SIZE) -> None:
        self.max_records = max_records
        self._records: dict[str, deque[Record]] = {}

    def add(self, record: Record) -> None:
        bucket = self._records.get(record.collection_id)
        if bucket is None:
            bucket = deque(maxlen=self.max_records)
            self._records[record.collection_id] = bucket
        bucket.append(record)

    def clear(self, collection_id: str | None = None) -> None:
        if collection_id is None:
            self._records.clear()
        else:
            self._records.pop(collection_id, None)

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._records.values())

    def find_associated(
        self,
        record: Record,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
    ) -> list[Attachment]:
        seen_urls: set[str] = set()
        found: list[Attachment] = []

        def _take(attachment: Attachment) -> None:
            if not is_image_name(attachment.filename) or attachment.url in seen_urls:
                return
            seen_urls.add(attachment.url)
            found.append(attachment)

        for attachment in record.attachments:
            _take(attachment)

        window = timedelta(seconds=window_seconds)
        for other in self._records.get(record.collection_id, ()):
            if other.record_id == record.record_id or other.author != record.author:
                continue
            if abs(other.timestamp - record.timestamp) > window:
                continue
            for attachment in other.attachments:
                _take(attachment)
        return found
