import unittest
from pathlib import Path

from sharehost.config import BYTES_PER_MB, Settings


class SettingsFromEnvTests(unittest.TestCase):
    def test_defaults(self):
        settings = Settings.from_env({})
        self.assertEqual(settings.port, 3000)
        self.assertEqual(settings.base_url, "http://localhost:3000")
        self.assertEqual(settings.uploads_dir, (Path.cwd() / "uploads").resolve())
        self.assertTrue(settings.should_redirect)
        self.assertTrue(settings.serve_uploads)
        self.assertTrue(settings.init_cleanup)
        self.assertEqual(settings.max_file_size_mb, 64)
        self.assertEqual(settings.max_temp_file_size_mb, 128)
        self.assertEqual(settings.max_ttl_hours, 168)
        self.assertEqual(settings.cleanup_period_hours, 1)
        self.assertEqual(settings.upload_rate_limit, "60 per minute")

    def test_overrides(self):
        settings = Settings.from_env(
            {
                "PORT": "8080",
                "BASE_URL": "https://files.example.com/",
                "UPLOADS_DIRECTORY": "/srv/share/uploads",
                "SHOULD_REDIRECT": "false",
                "SERVE_UPLOADS": "0",
                "MAX_FILE_SIZE": "10",
                "MAX_TEMP_FILE_SIZE": "20",
                "MAX_TTL_HOURS": "48",
                "CLEANUP_PERIOD": "6",
                "INIT_CLEANUP": "no",
                "LOG_LEVEL": "debug",
            }
        )
        self.assertEqual(settings.port, 8080)
        self.assertEqual(settings.base_url, "https://files.example.com")
        self.assertEqual(settings.uploads_dir, Path("/srv/share/uploads"))
        self.assertFalse(settings.should_redirect)
        self.assertFalse(settings.serve_uploads)
        self.assertFalse(settings.init_cleanup)
        self.assertEqual(settings.size_limit(temporary=False), 10 * BYTES_PER_MB)
        self.assertEqual(settings.size_limit(temporary=True), 20 * BYTES_PER_MB)
        self.assertEqual(settings.max_ttl_hours, 48)
        self.assertEqual(settings.cleanup_period_hours, 6)
        self.assertEqual(settings.log_level, "DEBUG")

    def test_base_url_follows_port(self):
        self.assertEqual(
            Settings.from_env({"PORT": "4000"}).base_url, "http://localhost:4000"
        )

    def test_invalid_values_fall_back_with_warning(self):
        with self.assertLogs("sharehost.config", level="WARNING") as logs:
            settings = Settings.from_env(
                {
                    "MAX_FILE_SIZE": "lots",
                    "CLEANUP_PERIOD": "0",
                    "SHOULD_REDIRECT": "maybe",
                    "LOG_LEVEL": "CHATTY",
                }
            )
        self.assertEqual(settings.max_file_size_mb, 64)
        self.assertEqual(settings.cleanup_period_hours, 1)
        self.assertTrue(settings.should_redirect)
        self.assertEqual(settings.log_level, "INFO")
        self.assertEqual(len(logs.output), 4)


if __name__ == "__main__":
    unittest.main()
