import json
import os
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from src.mapindex.infrastructure.http_fetcher import AuthError
from src.mapindex.infrastructure.token_provider import CACHE_FILENAME, StaticTokenProvider
from tests.utils.tempdir import managed_temp_dir

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
NO_TOKEN_ENV = {"DISCORD_TOKEN": "", "DISCORD_USER_TOKEN": ""}


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class StaticTokenProviderTests(unittest.IsolatedAsyncioTestCase):
    async def test_direct_token_wins_and_is_cached(self):
        with managed_temp_dir("token_direct") as tmp_dir:
            token_file = tmp_dir / "token.txt"
            token_file.write_text("from-file", encoding="utf-8")
            provider = StaticTokenProvider(
                token=" direct ",
                token_file=token_file,
                cache_dir=tmp_dir / "cache",
                home_dir=tmp_dir,
                clock=FakeClock(T0),
            )

            with patch.dict(os.environ, {"DISCORD_TOKEN": "from-env"}):
                info = await provider.get_token()

            self.assertEqual(info.token, "direct")
            cached = json.loads((tmp_dir / "cache" / CACHE_FILENAME).read_text(encoding="utf-8"))
            self.assertEqual(cached["token"], "direct")
            self.assertEqual(cached["savedAt"], "2024-01-01T00:00:00Z")
            self.assertIn("expiresAt", cached)

    async def test_resolution_order_file_env_home(self):
        with managed_temp_dir("token_order") as tmp_dir:
            (tmp_dir / ".discord-token").write_text("from-home\n", encoding="utf-8")
            token_file = tmp_dir / "token.txt"
            token_file.write_text("from-file\n", encoding="utf-8")

            with patch.dict(os.environ, NO_TOKEN_ENV):
                by_file = await StaticTokenProvider(token_file=token_file, home_dir=tmp_dir).get_token()
                by_home = await StaticTokenProvider(home_dir=tmp_dir).get_token()
            with patch.dict(os.environ, {"DISCORD_TOKEN": "", "DISCORD_USER_TOKEN": "from-user-env"}):
                by_env = await StaticTokenProvider(home_dir=tmp_dir).get_token()

            self.assertEqual(by_file.token, "from-file")
            self.assertEqual(by_home.token, "from-home")
            self.assertEqual(by_env.token, "from-user-env")

    async def test_missing_token_raises_auth_error(self):
        with managed_temp_dir("token_missing") as tmp_dir:
            with patch.dict(os.environ, NO_TOKEN_ENV):
                with self.assertRaises(AuthError):
                    await StaticTokenProvider(home_dir=tmp_dir).get_token()

    async def test_expired_cache_is_ignored_and_clear_removes_it(self):
        with managed_temp_dir("token_expiry") as tmp_dir:
            clock = FakeClock(T0)
            cache_dir = tmp_dir / "cache"
            first = StaticTokenProvider(token="old", cache_dir=cache_dir, ttl=timedelta(days=1), clock=clock)
            await first.get_token()

            clock.now = T0 + timedelta(hours=1)
            cached = StaticTokenProvider(token="new", cache_dir=cache_dir, clock=clock)
            self.assertEqual((await cached.get_token()).token, "old")

            clock.now = T0 + timedelta(days=2)
            (cache_dir / CACHE_FILENAME).write_text(
                json.dumps({"token": "old", "expiresAt": "2024-01-02T00:00:00Z"}),
                encoding="utf-8",
            )
            self.assertEqual((await cached.get_token()).token, "new")

            cached.clear_cache()
            self.assertFalse((cache_dir / CACHE_FILENAME).exists())


if __name__ == "__main__":
    unittest.main()
