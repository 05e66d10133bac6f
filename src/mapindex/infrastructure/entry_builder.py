import shutil
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

from src.config.logger_config import logger

from src.mapindex.application.contracts import MaterializationResult, MaterializedEntry
from src.mapindex.application.ports import SourceAdapterPort
from src.mapindex.domain.dedup import file_sha256, locator_key
from src.mapindex.domain.models import (
    ArtifactFile,
    ArtifactKind,
    Attachment,
    CanonicalEntry,
    Record,
    RecordClassification,
)
from src.mapindex.domain.rules import (
    generate_entry_id,
    image_kind,
    is_primary_name,
    pack_name_from_filename,
    sanitize_filename,
    source_levels_dir,
)
from src.mapindex.infrastructure.catalog_store import write_descriptor
from src.mapindex.infrastructure.http_fetcher import FetchError, RetryingFetcher
from src.mapindex.infrastructure.zip_stream import StreamingZipExtractor

PACK_TAG = "map-pack"


class EntryMaterializer:
    """Turns a qualifying record into canonical entry directories on disk.

    Each level gets ``<output>/<source dir>/<uuid>/`` holding the level file,
    any associated images and a ``catalog.json`` descriptor.
    """

    def __init__(
        self,
        output_dir: str | Path,
        adapter: SourceAdapterPort,
        fetcher: RetryingFetcher,
        extractor: StreamingZipExtractor | None = None,
        verify_archives: bool = False,
    ) -> None:
        self.adapter = adapter
        self.fetcher = fetcher
        self.extractor = extractor or StreamingZipExtractor()
        self.verify_archives = verify_archives
        self.levels_root = Path(output_dir) / source_levels_dir(adapter.source)

    async def materialize(
        self,
        record: Record,
        classification: RecordClassification,
        associated: list[Attachment],
        is_known: Callable[[str], bool],
    ) -> MaterializationResult:
        result = MaterializationResult()
        images = list(associated)
        try:
            for attachment in classification.primaries:
                if is_known(locator_key(attachment.url)):
                    logger.debug("Skipping known level file {}", attachment.filename)
                    result.precheck_skipped += 1
                    continue
                result.entries.append(await self._materialize_primary(record, attachment, images))
                images = []

            for container in classification.containers:
                if is_known(locator_key(container.url)):
                    logger.debug("Skipping known map pack {}", container.filename)
                    result.precheck_skipped += 1
                    continue
                entries, error = await self._materialize_container(record, container, images)
                if entries:
                    images = []
                result.entries.extend(entries)
                if error:
                    result.error = error
        except BaseException:
            for item in result.entries:
                self.discard(item)
            raise
        return result

    def discard(self, item: MaterializedEntry) -> None:
        shutil.rmtree(item.entry.storage_path, ignore_errors=True)

    async def _materialize_primary(
        self,
        record: Record,
        attachment: Attachment,
        images: list[Attachment],
    ) -> MaterializedEntry:
        entry_id = generate_entry_id()
        level_dir = self._allocate(entry_id)
        try:
            filename = sanitize_filename(attachment.filename)
            dat_path = level_dir / filename
            size = await self.fetcher.download(attachment.url, dat_path, operation="download_level")
            content_hash = file_sha256(dat_path)
            files = [ArtifactFile(filename, str(dat_path), size, content_hash, ArtifactKind.DAT)]
            files.extend(await self._download_images(level_dir, images, {filename}))
            metadata = self.adapter.build_metadata(record, attachment.filename, entry_id)
            if metadata.file_size is None:
                metadata.file_size = size
            entry = CanonicalEntry(metadata=metadata, files=files, storage_path=str(level_dir))
            write_descriptor(entry)
        except BaseException:
            shutil.rmtree(level_dir, ignore_errors=True)
            raise
        return MaterializedEntry(entry=entry, content_hash=content_hash, locator_key=locator_key(attachment.url))

    async def _materialize_container(
        self,
        record: Record,
        container: Attachment,
        images: list[Attachment],
    ) -> tuple[list[MaterializedEntry], str | None]:
        pack_name = pack_name_from_filename(container.filename)
        allocated: list[Path] = []

        def _sink(member_name: str) -> Path:
            level_dir = self._allocate(generate_entry_id())
            allocated.append(level_dir)
            return level_dir / sanitize_filename(member_name)

        materialized: list[MaterializedEntry] = []
        try:
            async with self.fetcher.stream(container.url, operation="stream_pack") as chunks:
                report = await self.extractor.extract(
                    chunks,
                    is_primary_name,
                    _sink,
                    verify=self.verify_archives,
                    expected_sha256=container.sha256,
                )

            key = locator_key(container.url) if report.completed else None
            for extracted in report.entries:
                level_dir = extracted.path.parent
                files = [
                    ArtifactFile(
                        extracted.path.name,
                        str(extracted.path),
                        extracted.size,
                        extracted.sha256,
                        ArtifactKind.DAT,
                    )
                ]
                if not materialized:
                    files.extend(await self._download_images(level_dir, images, {extracted.path.name}))
                metadata = self.adapter.build_metadata(record, extracted.name, level_dir.name)
                metadata = replace(
                    metadata,
                    description=_pack_description(pack_name, metadata.description),
                    tags=[*metadata.tags, PACK_TAG, pack_name],
                    file_size=extracted.size,
                )
                entry = CanonicalEntry(metadata=metadata, files=files, storage_path=str(level_dir))
                write_descriptor(entry)
                materialized.append(MaterializedEntry(entry=entry, content_hash=extracted.sha256, locator_key=key))
        except BaseException:
            for level_dir in allocated:
                shutil.rmtree(level_dir, ignore_errors=True)
            raise

        kept = {Path(item.entry.storage_path) for item in materialized}
        for level_dir in allocated:
            if level_dir not in kept:
                shutil.rmtree(level_dir, ignore_errors=True)

        logger.info("Extracted {} levels from map pack {}", len(materialized), container.filename)
        if not report.completed:
            return materialized, f"Map pack {container.filename} only partially extracted: {report.error}"
        return materialized, None

    async def _download_images(
        self,
        level_dir: Path,
        images: list[Attachment],
        taken: set[str],
    ) -> list[ArtifactFile]:
        files: list[ArtifactFile] = []
        for image in images:
            filename = _unique_name(sanitize_filename(image.filename), taken)
            path = level_dir / filename
            try:
                size = await self.fetcher.download(image.url, path, operation="download_image")
            except (FetchError, OSError) as exc:
                logger.warning("Could not download image {}: {}", image.filename, exc)
                continue
            taken.add(filename)
            files.append(ArtifactFile(filename, str(path), size, file_sha256(path), image_kind(filename)))
        return files

    def _allocate(self, entry_id: str) -> Path:
        level_dir = self.levels_root / entry_id
        level_dir.mkdir(parents=True, exist_ok=False)
        return level_dir


def _pack_description(pack_name: str, description: str) -> str:
    prefix = f"Part of map pack: {pack_name}"
    return f"{prefix}\n\n{description}" if description else prefix


def _unique_name(filename: str, taken: set[str]) -> str:
    if filename not in taken:
        return filename
    stem, dot, suffix = filename.rpartition(".")
    if not dot:
        stem, suffix = filename, ""
    counter = 1
    while True:
        candidate = f"{stem}_{counter}.{suffix}" if suffix else f"{stem}_{counter}"
        if candidate not in taken:
            return candidate
        counter += 1
