"""Remote sources of level files."""

from src.mapindex.infrastructure.adapters.discord import DiscordAdapter
from src.mapindex.infrastructure.adapters.hognose import HognoseAdapter
from src.mapindex.infrastructure.adapters.internet_archive import InternetArchiveAdapter

__all__ = ["DiscordAdapter", "HognoseAdapter", "InternetArchiveAdapter"]
