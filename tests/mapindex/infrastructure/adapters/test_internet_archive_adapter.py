import json
import unittest

from src.mapindex.domain.models import Collection, ResponseShapeError
from src.mapindex.infrastructure.adapters.internet_archive import (
    ARCHIVE_BASE,
    DateRange,
    InternetArchiveAdapter,
    html_to_text,
    pick_images,
)
from src.mapindex.infrastructure.http_fetcher import FetcherConfig, RetryingFetcher
from tests.utils.fake_http import FakeResponse, FakeSession
from tests.utils.tempdir import managed_temp_dir

SCRAPE_URL = f"{ARCHIVE_BASE}/services/search/v1/scrape"


def make_adapter(session: FakeSession, **kwargs) -> InternetArchiveAdapter:
    return InternetArchiveAdapter(RetryingFetcher(session, FetcherConfig(retries=1)), ["manic miners level"], **kwargs)


def scrape_item(identifier: str, **fields) -> dict:
    return {
        "identifier": identifier,
        "title": fields.get("title", f"Item {identifier}"),
        "creator": fields.get("creator", "Archivist"),
        "date": fields.get("date", "2019-07-04T00:00:00Z"),
        "description": fields.get("description", "<p>Big <b>cave</b> #hard</p>"),
        "mediatype": "software",
        "collection": ["opensource_media"],
        "downloads": 12,
    }


class InternetArchiveAdapterTests(unittest.IsolatedAsyncioTestCase):
    async def test_query_combines_terms_and_date_range(self):
        adapter = InternetArchiveAdapter(
            RetryingFetcher(FakeSession()),
            ["manic miners level", "subject:manic miners"],
            date_range=DateRange("2020-01-01", "2020-12-31"),
        )
        collections = await adapter.resolve_collections()
        self.assertEqual(
            adapter.query,
            "manic miners level OR subject:manic miners AND date:[2020-01-01 TO 2020-12-31]",
        )
        self.assertEqual(collections[0].collection_id, f"search:{adapter.query}")

    async def test_scrape_pages_follow_opaque_cursor(self):
        session = FakeSession(
            routes={
                SCRAPE_URL: [
                    FakeResponse(json_data={"items": [scrape_item("a"), scrape_item("b")], "cursor": "NEXT"}),
                    FakeResponse(json_data={"items": [scrape_item("c")]}),
                ]
            }
        )
        adapter = make_adapter(session)
        collection = (await adapter.resolve_collections())[0]

        first = await adapter.list_page(collection, None)
        second = await adapter.list_page(collection, first.next_cursor)

        self.assertEqual([item.record_id for item in first.items], ["a", "b"])
        self.assertTrue(first.has_more)
        self.assertEqual(session.calls[1]["params"]["cursor"], "NEXT")
        self.assertFalse(second.has_more)
        self.assertIsNone(second.next_cursor)
        self.assertEqual(first.items[0].content, "Big cave #hard")
        self.assertEqual(first.items[0].author, "Archivist")

    async def test_scrape_without_item_list_is_rejected(self):
        session = FakeSession(routes={SCRAPE_URL: [FakeResponse(json_data={"items": "nope"})]})
        adapter = make_adapter(session)
        with self.assertRaises(ResponseShapeError):
            await adapter.list_page(Collection("search", "search"), None)

    async def test_resolve_record_picks_levels_and_best_images_with_cache(self):
        files = [
            {"name": "cave.dat", "size": "2048"},
            {"name": "lava.dat", "size": "1024"},
            {"name": "readme.txt"},
            {"name": "__ia_thumb.jpg", "size": "100"},
            {"name": "cave_thumb.jpg", "size": "100"},
            {"name": "photo.jpg", "size": "100"},
            {"name": "Screenshot 1.png", "size": "500"},
        ]
        metadata_url = f"{ARCHIVE_BASE}/metadata/item-1"
        session = FakeSession(
            routes={
                SCRAPE_URL: [FakeResponse(json_data={"items": [scrape_item("item-1")]})],
                metadata_url: [FakeResponse(json_data={"files": files})],
            }
        )
        with managed_temp_dir("archive_cache") as tmp_dir:
            adapter = make_adapter(session, metadata_cache_dir=tmp_dir)
            page = await adapter.list_page(Collection("search", "search"), None)

            resolved = await adapter.resolve_record(page.items[0])
            again = await adapter.resolve_record(page.items[0])

            self.assertEqual(
                [item.filename for item in resolved.attachments],
                ["cave.dat", "lava.dat", "Screenshot 1.png", "cave_thumb.jpg"],
            )
            self.assertEqual(
                resolved.attachments[2].url,
                "https://archive.org/download/item-1/Screenshot%201.png",
            )
            self.assertEqual(again.attachments, resolved.attachments)
            self.assertEqual(len([call for call in session.calls if call["url"] == metadata_url]), 1)
            self.assertEqual(json.loads((tmp_dir / "item-1.json").read_text(encoding="utf-8"))["files"], files)

            metadata = adapter.build_metadata(resolved, "lava.dat", "entry-1")
            self.assertEqual(metadata.title, "Item item-1 - lava")
            self.assertEqual(metadata.format_version, "below-v1")
            self.assertEqual(metadata.download_count, 12)
            self.assertEqual(metadata.source_url, "https://archive.org/details/item-1")
            self.assertEqual(
                metadata.tags,
                ["archive", "internet-archive", "software", "opensource_media", "hard"],
            )

    async def test_missing_item_resolves_without_attachments(self):
        session = FakeSession(
            routes={
                SCRAPE_URL: [FakeResponse(json_data={"items": [scrape_item("gone")]})],
                f"{ARCHIVE_BASE}/metadata/gone": [FakeResponse(status=404)],
            }
        )
        adapter = make_adapter(session)
        page = await adapter.list_page(Collection("search", "search"), None)

        resolved = await adapter.resolve_record(page.items[0])

        self.assertEqual(resolved.attachments, ())
        self.assertFalse(adapter.classify_record(resolved).qualifies)

    async def test_unparsable_date_falls_back_to_now(self):
        session = FakeSession(routes={SCRAPE_URL: [FakeResponse(json_data={"items": [scrape_item("x", date="someday")]})]})
        adapter = make_adapter(session)
        page = await adapter.list_page(Collection("search", "search"), None)
        self.assertIsNotNone(page.items[0].timestamp.tzinfo)


class ArchiveHelperTests(unittest.TestCase):
    def test_html_to_text_joins_lists(self):
        self.assertEqual(html_to_text(["<p>one</p>", "two"]), "one two")
        self.assertEqual(html_to_text(None), "")

    def test_pick_images_prefers_large_screenshots(self):
        chosen = pick_images(
            [
                {"name": "preview.jpg", "size": 10},
                {"name": "map.png", "size": 2_000_000},
                {"name": "map_screenshot.jpg", "size": 10},
            ]
        )
        self.assertEqual([item["name"] for item in chosen], ["map_screenshot.jpg"])


if __name__ == "__main__":
    unittest.main()
