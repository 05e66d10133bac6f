import unittest

from src.mapindex.domain.models import ArtifactKind, Attachment, MapSource
from src.mapindex.domain.rules import (
    classify_attachments,
    extract_hashtags,
    format_version_for_source,
    format_version_from_filename,
    image_kind,
    is_placeholder_author,
    pack_name_from_filename,
    parse_author,
    sanitize_filename,
    source_levels_dir,
    title_from_filename,
)


class LevelRulesTests(unittest.TestCase):
    def test_classify_splits_levels_and_packs(self):
        result = classify_attachments(
            [
                Attachment("a.DAT", "u1"),
                Attachment("pack.zip", "u2"),
                Attachment("shot.png", "u3"),
            ]
        )
        self.assertEqual([item.filename for item in result.primaries], ["a.DAT"])
        self.assertEqual([item.filename for item in result.containers], ["pack.zip"])
        self.assertTrue(result.qualifies)
        self.assertFalse(classify_attachments([Attachment("shot.png", "u")]).qualifies)

    def test_sanitize_filename_strips_paths_and_spaces(self):
        self.assertEqual(sanitize_filename("../../my level.dat"), "my_level.dat")
        self.assertEqual(sanitize_filename("what?.dat"), "what_.dat")
        self.assertEqual(sanitize_filename("dir\\sub\\map.dat"), "map.dat")
        self.assertEqual(sanitize_filename("???"), "untitled")

    def test_titles_and_pack_names(self):
        self.assertEqual(title_from_filename("Deep_Cave_Run.dat"), "Deep Cave Run")
        self.assertEqual(title_from_filename(".dat"), "Untitled")
        self.assertEqual(pack_name_from_filename("Hognose-v1.2.zip"), "Hognose-v1.2")

    def test_author_parsing(self):
        self.assertEqual(parse_author("New map made by Baraklava, enjoy", "poster"), "Baraklava")
        self.assertEqual(parse_author("Author: Jess", "poster"), "Jess")
        self.assertEqual(parse_author("just a map", "poster"), "poster")
        self.assertTrue(is_placeholder_author(" Unknown "))
        self.assertFalse(is_placeholder_author("Jess"))

    def test_format_versions(self):
        self.assertEqual(format_version_for_source(MapSource.HOGNOSE), "v1")
        self.assertEqual(format_version_for_source(MapSource.INTERNET_ARCHIVE), "below-v1")
        self.assertEqual(format_version_from_filename("cave_v2.dat"), "v2")
        self.assertIsNone(format_version_from_filename("cave.dat"))

    def test_misc_helpers(self):
        self.assertEqual(extract_hashtags("great #Cave level #hard"), ["cave", "hard"])
        self.assertEqual(image_kind("level_thumb.jpg"), ArtifactKind.THUMBNAIL)
        self.assertEqual(image_kind("level.png"), ArtifactKind.IMAGE)
        self.assertEqual(source_levels_dir(MapSource.DISCORD_ARCHIVE), "levels-discord-archive")


if __name__ == "__main__":
    unittest.main()
