import logging
import os
import unittest
from unittest import mock

from channelsync.config import Scope, Settings, load_settings_from_env
from channelsync.locks import KeyedLocks
from channelsync.logging_config import setup_logging


class SettingsFromEnvTests(unittest.TestCase):
    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = load_settings_from_env()

        self.assertEqual(settings, Settings())
        self.assertIsNone(settings.db_path)
        self.assertEqual(settings.retry_initial_delay_s, 0.25)
        self.assertEqual(settings.retry_max_delay_s, 10.0)

    def test_overrides(self):
        env = {
            "CHANNELSYNC_APP_ID": "tenant1",
            "CHANNELSYNC_DB_PATH": "/tmp/channelsync.db",
            "CHANNELSYNC_MAX_MESSAGE_LENGTH": "100",
            "CHANNELSYNC_RETRY_INITIAL_MS": "50",
            "CHANNELSYNC_RETRY_MAX_MS": "400",
            "CHANNELSYNC_LOG_LEVEL": "debug",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            settings = load_settings_from_env()

        self.assertEqual(settings.scope, Scope("tenant1"))
        self.assertEqual(settings.db_path, "/tmp/channelsync.db")
        self.assertEqual(settings.max_message_length, 100)
        self.assertEqual(settings.retry_initial_delay_s, 0.05)
        self.assertEqual(settings.retry_max_delay_s, 0.4)
        self.assertEqual(settings.log_level, "DEBUG")

    def test_invalid_values_raise(self):
        cases = {
            "CHANNELSYNC_MAX_MESSAGE_LENGTH": "lots",
            "CHANNELSYNC_RETRY_INITIAL_MS": "-1",
            "CHANNELSYNC_APP_ID": "a/b",
        }
        for name, value in cases.items():
            with self.subTest(name=name):
                with mock.patch.dict(os.environ, {name: value}, clear=True):
                    with self.assertRaises(ValueError):
                        load_settings_from_env()

    def test_zero_message_length_rejected(self):
        with mock.patch.dict(os.environ, {"CHANNELSYNC_MAX_MESSAGE_LENGTH": "0"}, clear=True):
            with self.assertRaises(ValueError):
                load_settings_from_env()


class ScopeTests(unittest.TestCase):
    def test_paths_are_prefixed_by_app(self):
        scope = Scope("app1")

        self.assertEqual(scope.account("u1"), "apps/app1/accounts/u1")
        self.assertEqual(scope.membership("c1", "u1"), "apps/app1/channels/c1/memberships/u1")
        self.assertEqual(scope.all_memberships(), "apps/app1/channels/*/memberships")
        self.assertEqual(scope.message("c1", "m1"), "apps/app1/channels/c1/messages/m1")
        self.assertNotEqual(Scope("app2").channel("c1"), scope.channel("c1"))


class LoggingSetupTests(unittest.TestCase):
    def setUp(self):
        root = logging.getLogger()
        self._handlers = list(root.handlers)
        self._level = root.level

    def tearDown(self):
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in self._handlers:
            root.addHandler(handler)
        root.setLevel(self._level)

    def test_setup_logging_applies_level_once(self):
        setup_logging("DEBUG", force=True)
        handlers = list(logging.getLogger().handlers)
        setup_logging("ERROR")

        self.assertEqual(logging.getLogger().level, logging.DEBUG)
        self.assertEqual(logging.getLogger().handlers, handlers)
        self.assertEqual(logging.getLogger("aiohttp.access").level, logging.WARNING)


class KeyedLocksTests(unittest.IsolatedAsyncioTestCase):
    async def test_locks_are_dropped_when_released(self):
        locks = KeyedLocks()

        async with locks.hold("c1"):
            self.assertEqual(len(locks), 1)
            async with locks.hold("c2"):
                self.assertEqual(len(locks), 2)

        self.assertEqual(len(locks), 0)


if __name__ == "__main__":
    unittest.main()
