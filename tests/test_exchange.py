import unittest

from rewatch.errors import ImportValidationError
from rewatch.exchange import build_export, document_to_snapshot, parse_import
from rewatch.models import SINGLETON_ID, PlaylistRecord, RecordKind, SettingsRecord, StatsRecord, VideoRecord
from tests.helpers import T0


class TestParseImport(unittest.TestCase):
    def test_current_version(self):
        doc = parse_import({
            "dataVersion": "1.1",
            "exportedAt": T0,
            "videos": [{"videoId": "v1", "time": 10, "timestamp": T0}],
            "playlists": [{"playlistId": "PL1", "title": "List"}],
            "settings": {"paginationCount": 25},
            "stats": {"totalWatchSeconds": 90},
        })
        self.assertEqual(doc.data_version, "1.1")
        self.assertEqual(doc.exported_at, T0)
        self.assertEqual(doc.videos[0].video_id, "v1")
        self.assertEqual(doc.playlists[0].title, "List")
        self.assertEqual(doc.settings.pagination_count, 25)
        self.assertEqual(doc.stats.total_watch_seconds, 90)

    def test_version_one_history_key(self):
        doc = parse_import({
            "_metadata": {"dataVersion": "1.0", "exportedAt": T0},
            "history": [{"videoId": "v1", "time": 3}],
        })
        self.assertEqual(doc.data_version, "1.0")
        self.assertEqual(doc.exported_at, T0)
        self.assertEqual([v.video_id for v in doc.videos], ["v1"])
        self.assertIsNone(doc.settings)

    def test_id_keyed_map(self):
        doc = parse_import({"videos": {"v1": {"time": 3}, "v2": {"time": 4}}})
        self.assertEqual(sorted(v.video_id for v in doc.videos), ["v1", "v2"])

    def test_legacy_bare_list(self):
        doc = parse_import([{"videoId": "v1", "time": 3}])
        self.assertEqual(doc.data_version, "1.0")
        self.assertEqual(len(doc.videos), 1)

    def test_unsupported_major_version(self):
        with self.assertRaises(ImportValidationError):
            parse_import({"dataVersion": "2.0", "videos": []})
        with self.assertRaises(ImportValidationError):
            parse_import({"dataVersion": "latest", "videos": []})

    def test_malformed_documents(self):
        bad_documents = [
            "not a document",
            {"dataVersion": "1.1"},
            {"videos": "v1"},
            {"videos": [{"videoId": "v1", "time": "soon"}]},
            {"videos": {"v1": 5}},
            {"videos": [], "settings": {"paginationCount": 0}},
        ]
        for document in bad_documents:
            with self.assertRaises(ImportValidationError):
                parse_import(document)

    def test_non_object_metadata_ignored(self):
        doc = parse_import({"_metadata": "x", "videos": []})
        self.assertEqual(doc.data_version, "1.0")


class TestBuildExport(unittest.TestCase):
    def test_shape(self):
        videos = [
            VideoRecord(video_id="old", timestamp=T0 - 10),
            VideoRecord(video_id="new", timestamp=T0),
        ]
        playlists = [PlaylistRecord(playlist_id="PL1", timestamp=T0)]
        data = build_export(videos, playlists, SettingsRecord(timestamp=0), StatsRecord(timestamp=0), T0)

        self.assertEqual(data["dataVersion"], "1.1")
        self.assertEqual(data["exportedAt"], T0)
        self.assertEqual([v["videoId"] for v in data["videos"]], ["new", "old"])
        self.assertEqual(data["playlists"][0]["playlistId"], "PL1")
        self.assertEqual(data["settings"]["autoCleanPeriod"], 90)
        self.assertEqual(data["_metadata"]["totalVideos"], 2)

    def test_export_parses_back(self):
        data = build_export([VideoRecord(video_id="v1", time=7, timestamp=T0)], [], None, None, T0)
        doc = parse_import(data)
        self.assertEqual(doc.videos[0].time, 7)
        self.assertIsNone(doc.settings)


class TestDocumentToSnapshot(unittest.TestCase):
    def test_missing_timestamps_use_import_time(self):
        doc = parse_import({"videos": [{"videoId": "v1", "time": 3}, {"videoId": "v2", "time": 3, "timestamp": 5}]})
        snapshot = document_to_snapshot(doc, T0)
        self.assertEqual(snapshot.get(RecordKind.VIDEO, "v1").timestamp, T0)
        self.assertEqual(snapshot.get(RecordKind.VIDEO, "v2").timestamp, 5)
        self.assertEqual(snapshot.tombstones, {})

    def test_local_sync_switches_kept(self):
        doc = parse_import({"settings": {"syncEnabled": True, "syncImmediate": True, "overlayColor": "red"}})
        local = SettingsRecord(sync_enabled=False, sync_immediate=False)
        imported = document_to_snapshot(doc, T0, local_settings=local).get(RecordKind.SETTINGS, SINGLETON_ID)
        self.assertFalse(imported.sync_enabled)
        self.assertFalse(imported.sync_immediate)
        self.assertEqual(imported.overlay_color, "red")


if __name__ == "__main__":
    unittest.main()
