import asyncio
import hashlib
import io
import os
from collections.abc import AsyncIterable, AsyncIterator, Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path, PurePosixPath

import aiohttp
import libarchive
from src.config.logger_config import logger

from src.mapindex.infrastructure.http_fetcher import FetchError

ARCHIVE_FORMAT = "zip"

MemberPredicate = Callable[[str], bool]
MemberSink = Callable[[str], Path]


@dataclass(frozen=True)
class ExtractedEntry:
    name: str
    path: Path
    size: int
    sha256: str


@dataclass
class ExtractionReport:
    entries: list[ExtractedEntry] = field(default_factory=list)
    completed: bool = True
    error: str | None = None
    stream_sha256: str | None = None
    checksum_ok: bool | None = None

    def abort(self, exc: BaseException) -> None:
        self.completed = False
        self.error = str(exc) or type(exc).__name__


class _ChunkStream(io.RawIOBase):
    """Blocking, non-seekable file view of an async chunk iterator.

    Meant to be read from a worker thread: every refill asks the event loop
    for the next chunk, so only one chunk is buffered here at a time.
    """

    def __init__(self, chunks: AsyncIterable[bytes], loop: asyncio.AbstractEventLoop) -> None:
        super().__init__()
        self._chunks = chunks.__aiter__()
        self._loop = loop
        self._pending = io.BytesIO()
        self._exhausted = False
        self.error: BaseException | None = None

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while True:
            count = self._pending.readinto(buffer)
            if count or self._exhausted:
                return count
            chunk = self._next_chunk()
            if chunk is None:
                self._exhausted = True
                return 0
            self._pending = io.BytesIO(chunk)

    def _next_chunk(self) -> bytes | None:
        future = asyncio.run_coroutine_threadsafe(self._anext(), self._loop)
        try:
            return future.result()
        except Exception as exc:
            # libarchive calls readinto from C; report the failure as end of data.
            self.error = exc
            return None

    async def _anext(self) -> bytes | None:
        try:
            return await self._chunks.__anext__()
        except StopAsyncIteration:
            return None


def is_safe_member_name(name: str) -> bool:
    normalized = name.replace("\\", "/")
    if not normalized or normalized.startswith("/"):
        return False
    parts = PurePosixPath(normalized).parts
    if parts and parts[0].endswith(":"):
        return False
    return ".." not in parts


async def iter_bytes(data: bytes, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
    view = memoryview(data)
    for start in range(0, len(view), chunk_size):
        yield bytes(view[start : start + chunk_size])


class StreamingZipExtractor:
    """Extract selected members of a zip archive while it is being downloaded.

    libarchive reads the archive sequentially in a worker thread, pulling the
    download one chunk at a time. Members rejected by the predicate are
    skipped by libarchive without being written anywhere.
    """

    def __init__(self, chunk_size: int = 64 * 1024) -> None:
        self.chunk_size = chunk_size

    async def extract(
        self,
        byte_stream: AsyncIterable[bytes],
        predicate: MemberPredicate,
        sink: MemberSink,
        *,
        verify: bool = False,
        expected_sha256: str | None = None,
    ) -> ExtractionReport:
        report = ExtractionReport()
        if verify:
            try:
                buffered = await self._buffer_stream(byte_stream)
            except (aiohttp.ClientError, asyncio.TimeoutError, FetchError) as exc:
                logger.error("Archive stream failed while buffering for verification: {}", exc)
                report.abort(exc)
                return report
            self._check_digest(buffered, expected_sha256, report)
            opener = partial(libarchive.memory_reader, buffered, format_name=ARCHIVE_FORMAT)
            await asyncio.to_thread(self._extract_all, opener, predicate, sink, report)
            return report

        stream = _ChunkStream(byte_stream, asyncio.get_running_loop())
        opener = partial(
            libarchive.stream_reader,
            stream,
            format_name=ARCHIVE_FORMAT,
            block_size=self.chunk_size,
        )
        await asyncio.to_thread(self._extract_all, opener, predicate, sink, report)
        if stream.error is not None:
            logger.error(
                "Archive download failed after {} entries: {}",
                len(report.entries),
                stream.error,
            )
            report.abort(stream.error)
        return report

    async def _buffer_stream(self, byte_stream: AsyncIterable[bytes]) -> bytes:
        buffered = bytearray()
        async for chunk in byte_stream:
            buffered.extend(chunk)
        return bytes(buffered)

    @staticmethod
    def _check_digest(data: bytes, expected_sha256: str | None, report: ExtractionReport) -> None:
        report.stream_sha256 = hashlib.sha256(data).hexdigest()
        if not expected_sha256:
            return
        report.checksum_ok = report.stream_sha256 == expected_sha256.lower()
        if not report.checksum_ok:
            logger.warning(
                "Archive checksum mismatch: expected {}, got {}. Keeping extracted files.",
                expected_sha256,
                report.stream_sha256,
            )

    def _extract_all(
        self,
        opener: Callable[[], AbstractContextManager],
        predicate: MemberPredicate,
        sink: MemberSink,
        report: ExtractionReport,
    ) -> None:
        try:
            with opener() as archive:
                for entry in archive:
                    extracted = self._extract_entry(entry, predicate, sink)
                    if extracted is not None:
                        report.entries.append(extracted)
        except libarchive.ArchiveError as exc:
            logger.error(
                "Archive extraction aborted after {} entries: {}",
                len(report.entries),
                exc,
            )
            report.abort(exc)

    def _extract_entry(self, entry, predicate: MemberPredicate, sink: MemberSink) -> ExtractedEntry | None:
        if not entry.isfile:
            return None
        try:
            name = entry.pathname
        except UnicodeDecodeError:
            logger.warning("Skipping archive member with an undecodable name")
            return None
        if not is_safe_member_name(name):
            logger.warning("Skipping unsafe archive member name: {}", name)
            return None
        if not predicate(name):
            return None

        try:
            target = Path(sink(name))
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Cannot open sink for archive member {}: {}", name, exc)
            return None

        part = target.with_name(target.name + ".part")
        digest = hashlib.sha256()
        size = 0
        try:
            with part.open("wb") as handle:
                for block in entry.get_blocks(self.chunk_size):
                    handle.write(block)
                    digest.update(block)
                    size += len(block)
            os.replace(part, target)
        except OSError as exc:
            part.unlink(missing_ok=True)
            logger.warning("Failed writing archive member {}: {}", name, exc)
            return None
        except BaseException:
            part.unlink(missing_ok=True)
            raise
        return ExtractedEntry(name=name, path=target, size=size, sha256=digest.hexdigest())
