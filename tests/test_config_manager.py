import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from cadence.config_manager import MASK, ConfigManager, sanitize_secret_updates
from cadence.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_creates_default_config(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))

            self.assertTrue(config_path.exists())
            config = manager.load()
            self.assertEqual(config.transcription.model, "whisper-1")
            self.assertEqual(config.assistant.default_event_minutes, 30)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "ai": {"base_url": "https://api.example.com/v1", "api_key": "k", "model": "gpt-4o-mini"},
                    "assistant": {"default_timezone": "Europe/Berlin"},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            self.assertFalse(config_path.with_suffix(".yaml.tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["assistant"]["default_timezone"], "Europe/Berlin")
            self.assertEqual(data["ai"]["api_key"], "k")

    def test_update_merges_and_keeps_masked_secret(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"ai": {"api_key": "secret", "model": "gpt-4o"}})

            updated = manager.update({"ai": {"api_key": MASK, "model": "gpt-4.1-mini"}, "logging": {"level": "debug"}})

            self.assertEqual(updated.ai.api_key, "secret")
            self.assertEqual(updated.ai.model, "gpt-4.1-mini")
            self.assertEqual(updated.logging.level, "DEBUG")
            self.assertEqual(manager.load().ai.api_key, "secret")

    def test_non_mapping_file_falls_back_to_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            config_path.write_text("- just\n- a list\n", encoding="utf-8")

            config = ConfigManager(str(config_path)).load()

            self.assertEqual(config.ai.model, "gpt-4o-mini")

    def test_loaded_config_is_a_private_copy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.load().ai.model = "mutated"

            self.assertEqual(manager.load().ai.model, "gpt-4o-mini")

    def test_masked_hides_secrets(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"ai": {"api_key": "secret"}})

            masked = manager.masked()

            self.assertEqual(masked["ai"]["api_key"], MASK)
            self.assertEqual(masked["transcription"]["api_key"], "")


class SanitizeSecretUpdatesTests(unittest.TestCase):
    def test_blank_secret_without_stored_value_stays_blank(self) -> None:
        sanitized = sanitize_secret_updates({"ai": {"api_key": ""}}, {"ai": {"api_key": ""}})

        self.assertEqual(sanitized, {"ai": {"api_key": ""}})

    def test_masked_secret_is_dropped_when_stored(self) -> None:
        sanitized = sanitize_secret_updates(
            {"transcription": {"api_key": MASK}}, {"transcription": {"api_key": "stored"}}
        )

        self.assertEqual(sanitized, {})

    def test_new_secret_passes_through(self) -> None:
        sanitized = sanitize_secret_updates({"ai": {"api_key": "new"}}, {"ai": {"api_key": "old"}})

        self.assertEqual(sanitized, {"ai": {"api_key": "new"}})


if __name__ == "__main__":
    unittest.main()
