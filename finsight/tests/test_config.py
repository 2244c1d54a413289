import os
import unittest
from unittest.mock import patch

from finsight.config import Settings, load_settings


class LoadSettingsTests(unittest.TestCase):
    @patch.dict(os.environ, {}, clear=True)
    def test_defaults(self) -> None:
        self.assertEqual(load_settings(), Settings())

    @patch.dict(
        os.environ,
        {
            "DATABASE_URL": "postgresql://db/finsight",
            "PROVIDER_TIMEOUT_SECONDS": "2.5",
            "SECURITY_QUOTE_TTL_SECONDS": "120",
            "QUOTE_FANOUT": "8",
            "CACHE_BACKEND": "SQL",
            "LOG_LEVEL": "debug",
        },
        clear=True,
    )
    def test_environment_overrides(self) -> None:
        settings = load_settings()

        self.assertEqual(settings.database_url, "postgresql://db/finsight")
        self.assertEqual(settings.provider_timeout_seconds, 2.5)
        self.assertEqual(settings.security_quote_ttl_seconds, 120)
        self.assertEqual(settings.quote_fanout, 8)
        self.assertEqual(settings.cache_backend, "sql")
        self.assertEqual(settings.log_level, "DEBUG")

    @patch.dict(
        os.environ,
        {"QUOTE_FANOUT": "many", "SECURITY_QUOTE_TTL_SECONDS": "-5", "CACHE_BACKEND": "redis"},
        clear=True,
    )
    def test_invalid_values_fall_back_to_defaults(self) -> None:
        settings = load_settings()

        self.assertEqual(settings.quote_fanout, 4)
        self.assertEqual(settings.security_quote_ttl_seconds, 60)
        self.assertEqual(settings.cache_backend, "memory")


if __name__ == "__main__":
    unittest.main()
