import json
import os
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from src.config.logger_config import logger

from src.mapindex.application.contracts import TokenInfo
from src.mapindex.domain.models import parse_timestamp, utc_now
from src.mapindex.infrastructure.http_fetcher import AuthError

CACHE_FILENAME = "discord-token.json"
HOME_TOKEN_FILENAME = ".discord-token"
TOKEN_ENV_VARS = ("DISCORD_TOKEN", "DISCORD_USER_TOKEN")
DEFAULT_TOKEN_TTL = timedelta(days=30)


class StaticTokenProvider:
    """Bearer token lookup for the chat API.

    Sources are tried in order: explicit token, token file, ``DISCORD_TOKEN``,
    ``DISCORD_USER_TOKEN`` and finally ``~/.discord-token``. The resolved token
    is cached on disk until it expires or ``clear_cache()`` is called.
    """

    def __init__(
        self,
        token: str | None = None,
        token_file: str | Path | None = None,
        cache_dir: str | Path | None = None,
        ttl: timedelta = DEFAULT_TOKEN_TTL,
        home_dir: str | Path | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.token = token
        self.token_file = Path(token_file) if token_file else None
        self.cache_path = Path(cache_dir) / CACHE_FILENAME if cache_dir else None
        self.ttl = ttl
        self.home_dir = Path(home_dir) if home_dir else Path.home()
        self._clock = clock

    async def get_token(self) -> TokenInfo:
        cached = self._read_cache()
        if cached is not None:
            return cached

        token = self._resolve()
        if not token:
            raise AuthError("No Discord token available; set DISCORD_TOKEN or provide a token file")
        info = TokenInfo(token=token, expires_at=self._clock() + self.ttl)
        self._write_cache(info)
        return info

    def clear_cache(self) -> None:
        if self.cache_path is not None and self.cache_path.exists():
            self.cache_path.unlink()
            logger.info("Cleared cached Discord token {}", self.cache_path)

    def _resolve(self) -> str | None:
        if self.token:
            logger.info("Using Discord token from direct parameter")
            return self.token.strip()

        if self.token_file is not None:
            token = self._read_token_file(self.token_file)
            if token:
                logger.info("Using Discord token from file: {}", self.token_file)
                return token

        for name in TOKEN_ENV_VARS:
            value = (os.getenv(name) or "").strip()
            if value:
                logger.info("Using Discord token from {} environment variable", name)
                return value

        token = self._read_token_file(self.home_dir / HOME_TOKEN_FILENAME)
        if token:
            logger.info("Using Discord token from home directory file")
        return token

    @staticmethod
    def _read_token_file(path: Path) -> str | None:
        try:
            if path.is_file():
                return path.read_text(encoding="utf-8").strip() or None
        except OSError as exc:
            logger.warning("Failed to read token file {}: {}", path, exc)
        return None

    def _read_cache(self) -> TokenInfo | None:
        if self.cache_path is None or not self.cache_path.is_file():
            return None
        try:
            payload = json.loads(self.cache_path.read_text(encoding="utf-8"))
            expires_at = parse_timestamp(payload["expiresAt"]) if payload.get("expiresAt") else None
            info = TokenInfo(
                token=str(payload["token"]),
                user_id=payload.get("userId"),
                username=payload.get("username"),
                expires_at=expires_at,
            )
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable token cache {}: {}", self.cache_path, exc)
            return None
        if info.expires_at is not None and info.expires_at <= self._clock():
            logger.info("Cached Discord token expired at {}", info.expires_at)
            return None
        return info

    def _write_cache(self, info: TokenInfo) -> None:
        if self.cache_path is None:
            return
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.cache_path.write_text(json.dumps(info.to_dict(self._clock()), indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not cache Discord token: {}", exc)
