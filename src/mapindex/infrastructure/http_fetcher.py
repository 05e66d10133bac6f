import asyncio
import json
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import aiohttp
from aiohttp import ClientConnectionError, ClientPayloadError, ClientResponseError, ContentTypeError
from src.config.logger_config import logger

from src.mapindex.domain.models import format_timestamp, utc_now
from src.mapindex.infrastructure.api_event_sink import ApiEventJsonlSink

T = TypeVar("T")

AUTH_STATUSES = frozenset({401, 403})
# ClientConnectionError also covers connection resets (ClientOSError).
_TRANSPORT_ERRORS = (ClientConnectionError, ClientPayloadError, ClientResponseError)


class FetchError(Exception):
    """Base class for remote fetch failures."""


class AuthError(FetchError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class FetchTimeoutError(FetchError):
    pass


class HttpStatusError(FetchError):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.status >= 500 or self.status == 429


@dataclass(frozen=True)
class FetcherConfig:
    retries: int = 3
    timeout_seconds: float = 60.0
    backoff_seconds: float = 1.0
    chunk_size: int = 64 * 1024


class RetryingFetcher:
    """Bounded-retry HTTP access shared by every source adapter.

    Server errors, throttling, dropped connections and timeouts are retried with
    a linear backoff of ``attempt * backoff_seconds``. Authentication failures
    and other client errors are raised on the first attempt.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        config: FetcherConfig | None = None,
        headers: dict[str, str] | None = None,
        event_sink: ApiEventJsonlSink | None = None,
    ) -> None:
        self.session = session
        self.config = config or FetcherConfig()
        self.headers = dict(headers or {})
        self.event_sink = event_sink

    def set_header(self, name: str, value: str | None) -> None:
        if value is None:
            self.headers.pop(name, None)
        else:
            self.headers[name] = value

    async def fetch_json(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        *,
        operation: str = "fetch_json",
    ) -> Any:
        async def _read(resp: aiohttp.ClientResponse) -> Any:
            try:
                return await resp.json(content_type=None)
            except (ContentTypeError, json.JSONDecodeError, ValueError) as exc:
                raise ClientPayloadError(f"Invalid JSON body: {exc}") from exc

        return await self._request(url, params, operation, _read)

    async def fetch_text(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        *,
        operation: str = "fetch_text",
    ) -> str:
        async def _read(resp: aiohttp.ClientResponse) -> str:
            return await resp.text()

        return await self._request(url, params, operation, _read)

    async def download(self, url: str, dest_path: str | Path, *, operation: str = "download") -> int:
        """Stream ``url`` into ``dest_path`` and return the number of bytes written.

        Bytes land in a sibling ``.part`` file that replaces the destination only
        after the body has been read completely.
        """
        dest = Path(dest_path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        part = dest.with_name(dest.name + ".part")

        async def _write(resp: aiohttp.ClientResponse) -> int:
            written = 0
            try:
                with part.open("wb") as handle:
                    async for chunk in resp.content.iter_chunked(self.config.chunk_size):
                        handle.write(chunk)
                        written += len(chunk)
                os.replace(part, dest)
            except BaseException:
                part.unlink(missing_ok=True)
                raise
            return written

        return await self._request(url, None, operation, _write)

    @asynccontextmanager
    async def stream(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        *,
        operation: str = "stream",
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """Open ``url`` with retries and yield its body as an async chunk iterator.

        Only opening the response is retried. Faults while the caller consumes
        the body propagate to the caller.
        """
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=self.config.timeout_seconds,
            sock_read=self.config.timeout_seconds,
        )

        async def _open() -> tuple[AsyncExitStack, aiohttp.ClientResponse]:
            stack = AsyncExitStack()
            try:
                resp = await stack.enter_async_context(
                    self.session.get(url, params=params, headers=self.headers, timeout=timeout)
                )
                self._check_status(resp, url)
            except BaseException:
                await stack.aclose()
                raise
            return stack, resp

        stack, resp = await self._with_retries(url, params, operation, _open)
        async with stack:
            yield resp.content.iter_chunked(self.config.chunk_size)

    async def _request(
        self,
        url: str,
        params: dict[str, Any] | None,
        operation: str,
        consume: Callable[[aiohttp.ClientResponse], Awaitable[T]],
    ) -> T:
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)

        async def _attempt() -> T:
            async with self.session.get(url, params=params, headers=self.headers, timeout=timeout) as resp:
                self._check_status(resp, url)
                return await consume(resp)

        return await self._with_retries(url, params, operation, _attempt)

    async def _with_retries(
        self,
        url: str,
        params: dict[str, Any] | None,
        operation: str,
        attempt_fn: Callable[[], Awaitable[T]],
    ) -> T:
        retries = max(1, self.config.retries)
        for attempt in range(1, retries + 1):
            started_at = format_timestamp(utc_now())
            try:
                result = await attempt_fn()
            except AuthError as exc:
                await self._write_event(operation, url, params, attempt, started_at, "auth_error", exc)
                logger.error("Authentication rejected for {} ({}): {}", operation, exc.status, url)
                raise
            except HttpStatusError as exc:
                if not exc.retryable:
                    await self._write_event(operation, url, params, attempt, started_at, "http_error", exc)
                    logger.error("HTTP {} for {}: {}", exc.status, operation, url)
                    raise
                error: FetchError = exc
            except asyncio.TimeoutError as exc:
                error = FetchTimeoutError(
                    f"{operation} timed out after {self.config.timeout_seconds}s: {url}"
                )
                error.__cause__ = exc
            except _TRANSPORT_ERRORS as exc:
                error = FetchError(f"{operation} failed: {exc}")
                error.__cause__ = exc
            else:
                await self._write_event(operation, url, params, attempt, started_at, "success")
                return result

            await self._write_event(operation, url, params, attempt, started_at, "retryable_error", error)
            if attempt == retries:
                logger.error("Failed after {} attempts. Error: {}", retries, error)
                raise error
            wait_time = attempt * self.config.backoff_seconds
            logger.warning(
                "Request unstable ({}). Attempt {}/{}, retrying in {}s...",
                error,
                attempt,
                retries,
                wait_time,
            )
            await asyncio.sleep(wait_time)

        raise FetchError(f"{operation} made no attempts: {url}")

    @staticmethod
    def _check_status(resp: aiohttp.ClientResponse, url: str) -> None:
        status = resp.status
        if status in AUTH_STATUSES:
            raise AuthError(f"HTTP {status} for {url}", status=status)
        if status >= 400:
            raise HttpStatusError(status, f"HTTP {status} for {url}")

    async def _write_event(
        self,
        operation: str,
        url: str,
        params: dict[str, Any] | None,
        attempt: int,
        started_at: str,
        outcome: str,
        error: Exception | None = None,
    ) -> None:
        if self.event_sink is None:
            return
        event = {
            "operation": operation,
            "attempt": attempt,
            "request": {"url": url, "params": params},
            "status": getattr(error, "status", None),
            "error": None if error is None else {"type": type(error).__name__, "message": str(error)},
            "timing": {"started_at": started_at, "finished_at": format_timestamp(utc_now())},
            "outcome": outcome,
        }
        try:
            await self.event_sink.write_event(event)
        except (OSError, RuntimeError) as exc:
            logger.warning("Failed to persist API event: {}", exc)
