import hashlib
import io
import unittest
import zipfile
from pathlib import Path

from aiohttp import ClientOSError

from src.mapindex.domain.rules import is_primary_name
from src.mapindex.infrastructure.zip_stream import StreamingZipExtractor, is_safe_member_name, iter_bytes
from tests.utils.tempdir import managed_temp_dir


class _UnseekableWriter:
    """Forces zipfile to emit data descriptors, like archives produced on the fly."""

    def __init__(self) -> None:
        self.buffer = io.BytesIO()

    def write(self, data):
        return self.buffer.write(data)

    def flush(self):
        pass


def build_zip(members: dict[str, bytes], compression=zipfile.ZIP_DEFLATED, streamed: bool = False) -> bytes:
    target = _UnseekableWriter() if streamed else io.BytesIO()
    with zipfile.ZipFile(target, "w", compression=compression) as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    buffer = target.buffer if streamed else target
    return buffer.getvalue()


def dir_sink(root: Path):
    def _sink(name: str) -> Path:
        return root / Path(name).name

    return _sink


class StreamingZipExtractorTests(unittest.IsolatedAsyncioTestCase):
    async def test_only_level_members_are_extracted(self):
        members = {
            "pack/one.dat": b"level one" * 50,
            "pack/readme.txt": b"not a level",
            "pack/two.dat": b"level two" * 70,
            "pack/preview.png": b"\x89PNG" + b"0" * 300,
            "pack/three.DAT": b"level three",
        }
        data = build_zip(members)
        with managed_temp_dir("zip_filter") as tmp_dir:
            report = await StreamingZipExtractor(chunk_size=17).extract(
                iter_bytes(data, 17),
                is_primary_name,
                dir_sink(tmp_dir),
            )

            self.assertTrue(report.completed)
            self.assertEqual([entry.name for entry in report.entries], ["pack/one.dat", "pack/two.dat", "pack/three.DAT"])
            self.assertEqual(sorted(path.name for path in tmp_dir.iterdir()), ["one.dat", "three.DAT", "two.dat"])
            self.assertEqual((tmp_dir / "two.dat").read_bytes(), members["pack/two.dat"])
            self.assertEqual(report.entries[0].sha256, hashlib.sha256(members["pack/one.dat"]).hexdigest())
            self.assertEqual(report.entries[1].size, len(members["pack/two.dat"]))
            self.assertEqual(list(tmp_dir.glob("*.part")), [])

    async def test_stored_members_are_extracted(self):
        data = build_zip({"a.dat": b"stored level", "b.txt": b"skip"}, compression=zipfile.ZIP_STORED)
        with managed_temp_dir("zip_stored") as tmp_dir:
            report = await StreamingZipExtractor().extract(iter_bytes(data, 5), is_primary_name, dir_sink(tmp_dir))

            self.assertTrue(report.completed)
            self.assertEqual((tmp_dir / "a.dat").read_bytes(), b"stored level")

    async def test_members_with_data_descriptors_are_extracted(self):
        members = {"first.dat": b"alpha" * 200, "notes.txt": b"skip me" * 10, "second.dat": b"beta" * 300}
        data = build_zip(members, streamed=True)
        with managed_temp_dir("zip_descriptor") as tmp_dir:
            report = await StreamingZipExtractor().extract(iter_bytes(data, 31), is_primary_name, dir_sink(tmp_dir))

            self.assertTrue(report.completed)
            self.assertEqual((tmp_dir / "first.dat").read_bytes(), members["first.dat"])
            self.assertEqual((tmp_dir / "second.dat").read_bytes(), members["second.dat"])

    async def test_truncated_stream_keeps_completed_entries(self):
        data = build_zip(
            {"first.dat": b"first level", "second.dat": b"second level" * 200},
            compression=zipfile.ZIP_STORED,
        )
        second_header = data.find(b"PK\x03\x04", 4)
        truncated = data[: second_header + 60]
        with managed_temp_dir("zip_truncated") as tmp_dir:
            report = await StreamingZipExtractor().extract(
                iter_bytes(truncated, 16),
                is_primary_name,
                dir_sink(tmp_dir),
            )

            self.assertFalse(report.completed)
            self.assertIsNotNone(report.error)
            self.assertEqual([entry.name for entry in report.entries], ["first.dat"])
            self.assertEqual(sorted(path.name for path in tmp_dir.iterdir()), ["first.dat"])

    async def test_failing_download_is_reported_with_completed_entries(self):
        data = build_zip(
            {"first.dat": b"first level", "second.dat": b"second level" * 400},
            compression=zipfile.ZIP_STORED,
        )
        cut = data.find(b"PK\x03\x04", 4) + 100

        async def _resetting_stream():
            async for chunk in iter_bytes(data[:cut], 16):
                yield chunk
            raise ClientOSError(104, "Connection reset by peer")

        with managed_temp_dir("zip_reset") as tmp_dir:
            report = await StreamingZipExtractor().extract(_resetting_stream(), is_primary_name, dir_sink(tmp_dir))

            self.assertFalse(report.completed)
            self.assertIn("Connection reset", report.error)
            self.assertEqual([entry.name for entry in report.entries], ["first.dat"])
            self.assertEqual(sorted(path.name for path in tmp_dir.iterdir()), ["first.dat"])

    async def test_garbage_stream_is_reported_not_raised(self):
        with managed_temp_dir("zip_garbage") as tmp_dir:
            report = await StreamingZipExtractor().extract(
                iter_bytes(b"this is not a zip archive"),
                is_primary_name,
                dir_sink(tmp_dir),
            )

            self.assertFalse(report.completed)
            self.assertEqual(report.entries, [])

    async def test_unsafe_member_names_never_reach_the_sink(self):
        data = build_zip({"../escape.dat": b"evil", "safe.dat": b"good"})
        requested: list[str] = []
        with managed_temp_dir("zip_unsafe") as tmp_dir:
            sink = dir_sink(tmp_dir)

            def _recording_sink(name: str) -> Path:
                requested.append(name)
                return sink(name)

            report = await StreamingZipExtractor().extract(iter_bytes(data), is_primary_name, _recording_sink)

            self.assertTrue(report.completed)
            self.assertEqual(requested, ["safe.dat"])
            self.assertEqual([entry.name for entry in report.entries], ["safe.dat"])

    async def test_checksum_mismatch_keeps_artifacts(self):
        data = build_zip({"level.dat": b"content"})
        with managed_temp_dir("zip_verify") as tmp_dir:
            report = await StreamingZipExtractor().extract(
                iter_bytes(data),
                is_primary_name,
                dir_sink(tmp_dir),
                verify=True,
                expected_sha256="0" * 64,
            )

            self.assertTrue(report.completed)
            self.assertFalse(report.checksum_ok)
            self.assertEqual(report.stream_sha256, hashlib.sha256(data).hexdigest())
            self.assertTrue((tmp_dir / "level.dat").is_file())

    async def test_checksum_match_is_reported(self):
        data = build_zip({"level.dat": b"content"})
        with managed_temp_dir("zip_verify_ok") as tmp_dir:
            report = await StreamingZipExtractor().extract(
                iter_bytes(data),
                is_primary_name,
                dir_sink(tmp_dir),
                verify=True,
                expected_sha256=hashlib.sha256(data).hexdigest().upper(),
            )

            self.assertTrue(report.checksum_ok)


class SafeMemberNameTests(unittest.TestCase):
    def test_rejects_traversal_and_absolute_names(self):
        self.assertFalse(is_safe_member_name("../x.dat"))
        self.assertFalse(is_safe_member_name("a/../../x.dat"))
        self.assertFalse(is_safe_member_name("/etc/x.dat"))
        self.assertFalse(is_safe_member_name("C:/x.dat"))
        self.assertFalse(is_safe_member_name("..\\x.dat"))

    def test_accepts_nested_relative_names(self):
        self.assertTrue(is_safe_member_name("pack/levels/x.dat"))


if __name__ == "__main__":
    unittest.main()
