import sqlite3
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from cadence.profile_store import ProfileStore


class ProfileStoreTests(unittest.TestCase):
    def test_save_merges_and_normalizes_email(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            store = ProfileStore(str(Path(temp_dir) / "state" / "cadence.db"))
            store.save("Ana@X.com", {"calendars": "both", "role": "engineer"})

            merged = store.save("ana@x.com", {"role": "manager"})

            self.assertEqual(merged, {"calendars": "both", "role": "manager"})
            self.assertEqual(store.get("ANA@x.com"), merged)
            self.assertIsNone(store.get("bo@x.com"))

    def test_calendar_type_ignores_unknown_choices(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            store = ProfileStore(str(Path(temp_dir) / "cadence.db"))
            store.save("ana@x.com", {"calendars": "Outlook"})
            store.save("bo@x.com", {"calendars": "yahoo"})

            self.assertEqual(store.calendar_type("ana@x.com"), "outlook")
            self.assertIsNone(store.calendar_type("bo@x.com"))
            self.assertIsNone(store.calendar_type(""))

    def test_calendar_type_survives_storage_errors(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            store = ProfileStore(str(Path(temp_dir) / "cadence.db"))

            with mock.patch.object(store, "get", side_effect=sqlite3.OperationalError("database is locked")):
                self.assertIsNone(store.calendar_type("ana@x.com"))

    def test_save_requires_email(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            store = ProfileStore(str(Path(temp_dir) / "cadence.db"))

            with self.assertRaises(ValueError):
                store.save(" ", {"calendars": "google"})


if __name__ == "__main__":
    unittest.main()
