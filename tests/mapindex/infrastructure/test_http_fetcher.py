import asyncio
import unittest
from unittest.mock import AsyncMock, patch

from aiohttp import ClientOSError, ServerDisconnectedError

from src.mapindex.infrastructure.http_fetcher import (
    AuthError,
    FetcherConfig,
    FetchError,
    FetchTimeoutError,
    HttpStatusError,
    RetryingFetcher,
)
from tests.utils.fake_http import FakeContent, FakeResponse, FakeSession, RecordingEventSink
from tests.utils.tempdir import managed_temp_dir

SLEEP = "src.mapindex.infrastructure.http_fetcher.asyncio.sleep"


class RetryingFetcherTests(unittest.IsolatedAsyncioTestCase):
    async def test_server_errors_are_retried_with_linear_backoff(self):
        session = FakeSession(
            [
                FakeResponse(status=503),
                FakeResponse(status=503),
                FakeResponse(status=200, json_data={"ok": True}),
            ]
        )
        sink = RecordingEventSink()
        fetcher = RetryingFetcher(session, FetcherConfig(retries=3, backoff_seconds=1.0), event_sink=sink)

        with patch(SLEEP, new=AsyncMock()) as sleep:
            payload = await fetcher.fetch_json("http://unit.invalid/items", operation="list_items")

        self.assertEqual(payload, {"ok": True})
        self.assertEqual(len(session.calls), 3)
        self.assertEqual([call.args[0] for call in sleep.await_args_list], [1.0, 2.0])
        self.assertEqual(
            [event["outcome"] for event in sink.events],
            ["retryable_error", "retryable_error", "success"],
        )
        self.assertEqual([event["attempt"] for event in sink.events], [1, 2, 3])

    async def test_throttling_is_retried(self):
        session = FakeSession([FakeResponse(status=429), FakeResponse(status=200, text_data="hello")])
        fetcher = RetryingFetcher(session)

        with patch(SLEEP, new=AsyncMock()):
            text = await fetcher.fetch_text("http://unit.invalid/page")

        self.assertEqual(text, "hello")
        self.assertEqual(len(session.calls), 2)

    async def test_auth_failure_is_not_retried(self):
        session = FakeSession([FakeResponse(status=401), FakeResponse(status=200, json_data={})])
        fetcher = RetryingFetcher(session)

        with patch(SLEEP, new=AsyncMock()) as sleep:
            with self.assertRaises(AuthError) as ctx:
                await fetcher.fetch_json("http://unit.invalid/private")

        self.assertEqual(ctx.exception.status, 401)
        self.assertEqual(len(session.calls), 1)
        sleep.assert_not_awaited()

    async def test_client_error_is_not_retried(self):
        session = FakeSession([FakeResponse(status=404)])
        fetcher = RetryingFetcher(session)

        with self.assertRaises(HttpStatusError) as ctx:
            await fetcher.fetch_json("http://unit.invalid/missing")

        self.assertEqual(ctx.exception.status, 404)
        self.assertFalse(ctx.exception.retryable)

    async def test_exhausted_retries_raise_last_error(self):
        session = FakeSession([FakeResponse(status=500), FakeResponse(status=502)])
        fetcher = RetryingFetcher(session, FetcherConfig(retries=2))

        with patch(SLEEP, new=AsyncMock()):
            with self.assertRaises(HttpStatusError) as ctx:
                await fetcher.fetch_json("http://unit.invalid/broken")

        self.assertEqual(ctx.exception.status, 502)

    async def test_timeout_surfaces_as_fetch_timeout(self):
        session = FakeSession([asyncio.TimeoutError(), asyncio.TimeoutError()])
        fetcher = RetryingFetcher(session, FetcherConfig(retries=2, timeout_seconds=5))

        with patch(SLEEP, new=AsyncMock()):
            with self.assertRaises(FetchTimeoutError):
                await fetcher.fetch_json("http://unit.invalid/slow")

        self.assertEqual(len(session.calls), 2)

    async def test_dropped_connection_is_retried(self):
        session = FakeSession([ServerDisconnectedError(), FakeResponse(status=200, json_data=[1, 2])])
        fetcher = RetryingFetcher(session)

        with patch(SLEEP, new=AsyncMock()):
            payload = await fetcher.fetch_json("http://unit.invalid/flaky")

        self.assertEqual(payload, [1, 2])

    async def test_connection_reset_is_retried(self):
        session = FakeSession(
            [ClientOSError(104, "Connection reset by peer"), FakeResponse(status=200, json_data={"ok": True})]
        )
        fetcher = RetryingFetcher(session)

        with patch(SLEEP, new=AsyncMock()):
            payload = await fetcher.fetch_json("http://unit.invalid/reset")

        self.assertEqual(payload, {"ok": True})
        self.assertEqual(len(session.calls), 2)

    async def test_persistent_reset_surfaces_as_fetch_error(self):
        session = FakeSession([ClientOSError(104, "Connection reset by peer") for _ in range(3)])
        fetcher = RetryingFetcher(session)

        with patch(SLEEP, new=AsyncMock()):
            with self.assertRaises(FetchError) as ctx:
                await fetcher.fetch_json("http://unit.invalid/reset")

        self.assertIsInstance(ctx.exception.__cause__, ClientOSError)
        self.assertEqual(len(session.calls), 3)

    async def test_headers_are_sent_with_every_request(self):
        session = FakeSession([FakeResponse(status=200, json_data={})])
        fetcher = RetryingFetcher(session, headers={"User-Agent": "unit"})
        fetcher.set_header("Authorization", "secret")

        await fetcher.fetch_json("http://unit.invalid/me")

        self.assertEqual(session.calls[0]["headers"], {"User-Agent": "unit", "Authorization": "secret"})

    async def test_download_writes_file_atomically(self):
        with managed_temp_dir("fetcher_download") as tmp_dir:
            session = FakeSession([FakeResponse(status=200, body=b"level-bytes" * 100)])
            fetcher = RetryingFetcher(session, FetcherConfig(chunk_size=64))
            dest = tmp_dir / "nested" / "map.dat"

            written = await fetcher.download("http://unit.invalid/map.dat", dest)

            self.assertEqual(written, 1100)
            self.assertEqual(dest.read_bytes(), b"level-bytes" * 100)
            self.assertEqual(list(dest.parent.glob("*.part")), [])

    async def test_failed_download_leaves_no_partial_file(self):
        with managed_temp_dir("fetcher_download_fail") as tmp_dir:
            broken = FakeContent(b"x" * 256, fail_after=64, error=ServerDisconnectedError())
            session = FakeSession([FakeResponse(status=200, content=broken)])
            fetcher = RetryingFetcher(session, FetcherConfig(retries=1, chunk_size=64))
            dest = tmp_dir / "map.dat"

            with self.assertRaises(FetchError):
                await fetcher.download("http://unit.invalid/map.dat", dest)

            self.assertFalse(dest.exists())
            self.assertEqual(list(tmp_dir.iterdir()), [])

    async def test_stream_yields_body_chunks(self):
        session = FakeSession([FakeResponse(status=503), FakeResponse(status=200, body=b"abcdefgh")])
        fetcher = RetryingFetcher(session, FetcherConfig(chunk_size=3))

        with patch(SLEEP, new=AsyncMock()):
            async with fetcher.stream("http://unit.invalid/pack.zip") as chunks:
                received = [chunk async for chunk in chunks]

        self.assertEqual(received, [b"abc", b"def", b"gh"])
        self.assertEqual(len(session.calls), 2)


if __name__ == "__main__":
    unittest.main()
