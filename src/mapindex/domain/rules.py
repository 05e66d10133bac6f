import re
import uuid
from pathlib import PurePosixPath

from pathvalidate import sanitize_filename as lib_sanitize

from src.mapindex.domain.models import ArtifactKind, Attachment, MapSource, RecordClassification

PRIMARY_EXTENSION = ".dat"
CONTAINER_EXTENSION = ".zip"
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".bmp", ".webp")
PLACEHOLDER_AUTHORS = frozenset({"", "unknown", "anonymous", "n/a"})
KNOWN_FORMAT_VERSIONS = frozenset({"below-v1", "v1", "v2"})

SOURCE_LEVEL_DIRS: dict[MapSource, str] = {
    MapSource.INTERNET_ARCHIVE: "levels-archive",
    MapSource.DISCORD_COMMUNITY: "levels-discord-community",
    MapSource.DISCORD_ARCHIVE: "levels-discord-archive",
    MapSource.HOGNOSE: "levels-hognose",
}

_AUTHOR_PATTERN = re.compile(r"\b(?:made by|created by|author|by)[:\s]+([^\n,]+)", re.IGNORECASE)
_HASHTAG_PATTERN = re.compile(r"#(\w+)")


def sanitize_filename(name: str) -> str:
    safe_name = lib_sanitize(PurePosixPath(name.replace("\\", "/")).name, replacement_text="_")
    safe_name = re.sub(r"\s+", "_", safe_name)
    safe_name = re.sub(r"_{2,}", "_", safe_name).strip("_")[:100]
    if not safe_name:
        return "untitled"
    return safe_name


def source_levels_dir(source: MapSource) -> str:
    return SOURCE_LEVEL_DIRS[source]


def generate_entry_id() -> str:
    return str(uuid.uuid4())


def is_primary_name(name: str) -> bool:
    return name.lower().endswith(PRIMARY_EXTENSION)


def is_container_name(name: str) -> bool:
    return name.lower().endswith(CONTAINER_EXTENSION)


def is_image_name(name: str) -> bool:
    return name.lower().endswith(IMAGE_EXTENSIONS)


def image_kind(name: str) -> ArtifactKind:
    lower = name.lower()
    if "thumb" in lower or "preview" in lower:
        return ArtifactKind.THUMBNAIL
    return ArtifactKind.IMAGE


def classify_attachments(attachments: tuple[Attachment, ...] | list[Attachment]) -> RecordClassification:
    return RecordClassification(
        primaries=tuple(att for att in attachments if is_primary_name(att.filename)),
        containers=tuple(att for att in attachments if is_container_name(att.filename)),
    )


def title_from_filename(name: str) -> str:
    stem = PurePosixPath(name.replace("\\", "/")).name
    if stem.lower().endswith(PRIMARY_EXTENSION):
        stem = stem[: -len(PRIMARY_EXTENSION)]
    title = stem.replace("_", " ").strip()
    return title or "Untitled"


def pack_name_from_filename(name: str) -> str:
    stem = PurePosixPath(name).name
    if stem.lower().endswith(CONTAINER_EXTENSION):
        stem = stem[: -len(CONTAINER_EXTENSION)]
    return stem


def parse_author(content: str, fallback: str) -> str:
    match = _AUTHOR_PATTERN.search(content or "")
    if match:
        candidate = match.group(1).strip()
        if candidate:
            return candidate
    return fallback


def extract_hashtags(text: str) -> list[str]:
    return [tag.lower() for tag in _HASHTAG_PATTERN.findall(text or "")]


def is_placeholder_author(author: str | None) -> bool:
    return (author or "").strip().lower() in PLACEHOLDER_AUTHORS


def format_version_for_source(source: MapSource) -> str:
    if source is MapSource.HOGNOSE:
        return "v1"
    return "below-v1"


def format_version_from_filename(name: str) -> str | None:
    lower = name.lower()
    if "_v2" in lower or "-v2" in lower:
        return "v2"
    if "_v1" in lower or "-v1" in lower:
        return "v1"
    if "old_" in lower:
        return "below-v1"
    return None
