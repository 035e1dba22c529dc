"""
Tests for configuration models and loaders.
"""

import unittest

import pytest
from parameterized import parameterized

from graphtx import (
    AccessMode,
    Bookmarks,
    ConfigurationError,
    DriverConfig,
    NotificationCategory,
    NotificationFilter,
    NotificationMinSeverity,
    load_driver_config,
    parse_driver_config,
)
from graphtx.config import (
    build_session_config,
    build_transaction_config,
    expand_env_vars,
    resolve_notification_filter,
)


class TestAccessMode(unittest.TestCase):
    @parameterized.expand([
        ("r", AccessMode.READ),
        ("READ", AccessMode.READ),
        ("read", AccessMode.READ),
        ("w", AccessMode.WRITE),
        ("Write", AccessMode.WRITE),
        (AccessMode.WRITE, AccessMode.WRITE),
    ])
    def test_parse(self, value, expected):
        self.assertEqual(AccessMode.parse(value), expected)

    def test_parse_invalid(self):
        with self.assertRaises(ValueError):
            AccessMode.parse("readwrite")
        with self.assertRaises(ValueError):
            AccessMode.parse(None)


class TestDriverConfigParsing(unittest.TestCase):
    def test_none_gives_defaults(self):
        self.assertEqual(parse_driver_config(None), DriverConfig())

    def test_top_level_and_driver_key(self):
        flat = parse_driver_config({"fetch_size": 10})
        nested = parse_driver_config({"driver": {"fetch_size": 10}})
        self.assertEqual(flat.fetch_size, 10)
        self.assertEqual(nested.fetch_size, 10)

    def test_not_a_mapping(self):
        with self.assertRaises(ConfigurationError):
            parse_driver_config(["fetch_size", 10])

    @parameterized.expand([
        ("zero_fetch_size", {"fetch_size": 0}),
        ("negative_retry_time", {"max_transaction_retry_time": -1}),
        ("multiplier_below_one", {"retry_delay_multiplier": 0.5}),
        ("jitter_above_one", {"retry_delay_jitter_factor": 1.5}),
        ("empty_database", {"default_database": ""}),
        ("unknown_key", {"retry_forever": True}),
        ("bad_severity", {"notifications_min_severity": "LOUD"}),
    ])
    def test_invalid_values(self, name, options):
        with self.assertRaises(ConfigurationError):
            parse_driver_config(options)

    def test_notification_options_are_case_insensitive(self):
        config = parse_driver_config({
            "notifications_min_severity": "warning",
            "notifications_disabled_categories": "hint",
        })
        self.assertEqual(config.notifications_min_severity, NotificationMinSeverity.WARNING)
        self.assertEqual(config.notifications_disabled_categories, frozenset({NotificationCategory.HINT}))


class TestLoadDriverConfig:
    def test_load_yaml(self, tmp_path):
        path = tmp_path / "graphtx.yaml"
        path.write_text(
            "driver:\n"
            "  default_database: movies\n"
            "  initial_retry_delay: 0.25\n"
            "  notifications_disabled_categories:\n"
            "    - HINT\n"
            "    - DEPRECATION\n"
        )
        config = load_driver_config(path)
        assert config.default_database == "movies"
        assert config.initial_retry_delay == 0.25
        assert config.notifications_disabled_categories == frozenset(
            {NotificationCategory.HINT, NotificationCategory.DEPRECATION}
        )

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_driver_config(path) == DriverConfig()

    def test_env_var_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FETCH", "25")
        monkeypatch.delenv("MISSING_DB", raising=False)
        path = tmp_path / "env.yaml"
        path.write_text("fetch_size: ${FETCH}\ndefault_database: db${MISSING_DB}\n")
        config = load_driver_config(path)
        assert config.fetch_size == 25
        assert config.default_database == "db"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_driver_config(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("driver: [unclosed\n")
        with pytest.raises(ConfigurationError):
            load_driver_config(path)

    def test_expand_env_vars_recurses(self, monkeypatch):
        monkeypatch.setenv("NAME", "x")
        assert expand_env_vars({"a": ["${NAME}", 1], "b": {"c": "${NAME}y"}}) == {
            "a": ["x", 1],
            "b": {"c": "xy"},
        }


class TestSessionConfig(unittest.TestCase):
    def test_defaults(self):
        config = build_session_config()
        self.assertIsNone(config.database)
        self.assertEqual(config.default_access_mode, AccessMode.WRITE)
        self.assertEqual(config.bookmarks, Bookmarks())
        self.assertIsNone(config.bookmark_manager)

    def test_mapping_and_keywords_merge(self):
        config = build_session_config({"database": "a", "fetch_size": 5}, database="b")
        self.assertEqual(config.database, "b")
        self.assertEqual(config.fetch_size, 5)

    def test_bookmarks_from_tokens(self):
        config = build_session_config(bookmarks=["neo4j:1", "neo4j:2"])
        self.assertEqual(config.bookmarks, Bookmarks.from_raw_values(["neo4j:1", "neo4j:2"]))

    def test_fetch_size_all(self):
        self.assertEqual(build_session_config(fetch_size=-1).fetch_size, -1)

    @parameterized.expand([
        ("zero_fetch_size", {"fetch_size": 0}),
        ("below_minus_one", {"fetch_size": -2}),
        ("bad_access_mode", {"default_access_mode": "x"}),
        ("unknown_option", {"retries": 3}),
    ])
    def test_invalid(self, name, options):
        with self.assertRaises(ConfigurationError):
            build_session_config(**options)


class TestTransactionConfig(unittest.TestCase):
    def test_valid(self):
        config = build_transaction_config({"app": "x"}, 2.5)
        self.assertEqual(config.metadata, {"app": "x"})
        self.assertEqual(config.timeout, 2.5)

    def test_metadata_must_be_dict(self):
        with self.assertRaises(ConfigurationError):
            build_transaction_config(["app"])

    def test_negative_timeout(self):
        with self.assertRaises(ConfigurationError):
            build_transaction_config(timeout=-1)


class TestNotificationFilter(unittest.TestCase):
    def test_min_severity_warning(self):
        f = NotificationFilter(min_severity="warning")
        self.assertTrue(f.allows("WARNING", "GENERIC"))
        self.assertFalse(f.allows("INFORMATION", "GENERIC"))

    def test_off_drops_everything(self):
        f = NotificationFilter(min_severity="OFF")
        self.assertFalse(f.allows("WARNING", "SECURITY"))

    def test_disabled_category(self):
        f = NotificationFilter(disabled_categories=["HINT"])
        self.assertFalse(f.allows("WARNING", "hint"))
        self.assertTrue(f.allows("INFORMATION", "PERFORMANCE"))

    def test_unknown_values_are_kept_as_warning(self):
        f = NotificationFilter(min_severity="WARNING")
        self.assertTrue(f.allows("SEVERE", "SOMETHING_NEW"))

    def test_resolve_prefers_session(self):
        driver = DriverConfig(
            notifications_min_severity="WARNING",
            notifications_disabled_categories=["HINT"],
        )
        session = build_session_config(notifications_min_severity="OFF")
        resolved = resolve_notification_filter(session, driver)
        self.assertEqual(resolved.min_severity, NotificationMinSeverity.OFF)
        self.assertEqual(resolved.disabled_categories, frozenset({NotificationCategory.HINT}))

    def test_resolve_unconfigured_is_none(self):
        self.assertIsNone(resolve_notification_filter(build_session_config(), DriverConfig()))
