import os
import unittest
from unittest import mock

from alumnode.config import Settings, load_settings_from_env


class SettingsTests(unittest.TestCase):
    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = load_settings_from_env()

        self.assertEqual(settings, Settings())
        self.assertIsNone(settings.db_path)
        self.assertTrue(settings.admin_fail_open)
        self.assertEqual(settings.admin_redirect_delay_s, 1.5)
        self.assertEqual(settings.message_page_size, 50)
        self.assertIsNone(settings.session_secret)

    def test_overrides(self):
        env = {
            "ALUMNODE_DB_PATH": "/tmp/alumnode.db",
            "ALUMNODE_MESSAGE_PAGE_SIZE": "20",
            "ALUMNODE_ADMIN_FAIL_OPEN": "0",
            "ALUMNODE_ADMIN_VERIFY_TIMEOUT_MS": "250",
            "ALUMNODE_ADMIN_REDIRECT_DELAY_MS": "0",
            "ALUMNODE_ALLOW_REREQUEST": "1",
            "ALUMNODE_SESSION_TTL_S": "60",
            "ALUMNODE_SESSION_SECRET": "bootstrap",
            "ALUMNODE_LOG_LEVEL": "debug",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            settings = load_settings_from_env()

        self.assertEqual(settings.db_path, "/tmp/alumnode.db")
        self.assertEqual(settings.message_page_size, 20)
        self.assertFalse(settings.admin_fail_open)
        self.assertEqual(settings.admin_verify_timeout_s, 0.25)
        self.assertEqual(settings.admin_redirect_delay_s, 0.0)
        self.assertTrue(settings.allow_rerequest_after_decline)
        self.assertEqual(settings.session_ttl_ms, 60_000)
        self.assertEqual(settings.session_secret, "bootstrap")
        self.assertEqual(settings.log_level, "DEBUG")

    def test_invalid_values_raise(self):
        for name, value in (
            ("ALUMNODE_MESSAGE_PAGE_SIZE", "abc"),
            ("ALUMNODE_MESSAGE_PAGE_SIZE", "0"),
            ("ALUMNODE_ADMIN_VERIFY_TIMEOUT_MS", "-1"),
            ("ALUMNODE_ADMIN_FAIL_OPEN", "yes"),
            ("ALUMNODE_LOG_LEVEL", "chatty"),
        ):
            with self.subTest(name=name, value=value):
                with mock.patch.dict(os.environ, {name: value}, clear=True):
                    with self.assertRaises(ValueError):
                        load_settings_from_env()


if __name__ == "__main__":
    unittest.main()
