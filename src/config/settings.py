import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DEFAULT_OUTPUT_DIR = Path("output")
DEFAULT_ARCHIVE_QUERIES = ("manic miners level",)
DEFAULT_HOGNOSE_REPO = "charredUtensil/groundhog"
DEFAULT_DISCORD_CHANNEL_NAMES = {
    "683985075704299520": "levels-archive",
    "1139908458968252457": "community-levels",
}


def _csv_env(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass(frozen=True)
class IndexerSettings:
    output_dir: Path = DEFAULT_OUTPUT_DIR
    discord_token: str | None = None
    discord_community_channels: tuple[str, ...] = ()
    discord_archive_channels: tuple[str, ...] = ()
    discord_excluded_threads: tuple[str, ...] = ()
    discord_channel_names: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_DISCORD_CHANNEL_NAMES)
    )
    archive_queries: tuple[str, ...] = DEFAULT_ARCHIVE_QUERIES
    hognose_repo: str = DEFAULT_HOGNOSE_REPO
    max_concurrency: int = 5
    retry_attempts: int = 3
    request_timeout_seconds: int = 60


def load_settings() -> IndexerSettings:
    """Build settings from the environment (``.env`` is loaded on import)."""
    return IndexerSettings(
        output_dir=Path(os.getenv("MAPINDEX_OUTPUT_DIR", str(DEFAULT_OUTPUT_DIR))),
        discord_token=os.getenv("DISCORD_TOKEN") or None,
        discord_community_channels=_csv_env("MAPINDEX_DISCORD_COMMUNITY_CHANNELS"),
        discord_archive_channels=_csv_env("MAPINDEX_DISCORD_ARCHIVE_CHANNELS"),
        discord_excluded_threads=_csv_env("MAPINDEX_DISCORD_EXCLUDED_THREADS"),
        archive_queries=_csv_env("MAPINDEX_ARCHIVE_QUERIES") or DEFAULT_ARCHIVE_QUERIES,
        hognose_repo=os.getenv("MAPINDEX_HOGNOSE_REPO", DEFAULT_HOGNOSE_REPO),
        max_concurrency=_int_env("MAPINDEX_MAX_CONCURRENCY", 5),
        retry_attempts=_int_env("MAPINDEX_RETRY_ATTEMPTS", 3),
        request_timeout_seconds=_int_env("MAPINDEX_REQUEST_TIMEOUT", 60),
    )
