"""Tests for the layered config loader and the typed option builders."""

import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

import yaml

from channel.connection import ChannelOptions
from engine.config_loader import (
    ConfigError,
    WatchSettings,
    _auto_convert,
    _deep_merge,
    load_config,
)
from engine.types import MonitorConfig


def _clean_env(**extra):
    env = {k: v for k, v in os.environ.items() if not k.startswith("RW_")}
    env.update(extra)
    return env


class _YamlDirCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _write_yaml(self, path, data):
        full = Path(self.tmpdir) / path
        full.parent.mkdir(parents=True, exist_ok=True)
        with open(full, "w") as f:
            yaml.dump(data, f)

    def load(self, env=None, **environ):
        with patch.dict(os.environ, _clean_env(**environ), clear=True):
            return load_config(env=env, project_root=self.tmpdir)


class TestDeepMerge(unittest.TestCase):

    def test_nested_merge(self):
        base = {"channel": {"host": "127.0.0.1", "call_timeout": 30}, "x": 3}
        overlay = {"channel": {"call_timeout": 10, "reconnect_delay": 1}}
        result = _deep_merge(base, overlay)
        self.assertEqual(result["channel"],
                         {"host": "127.0.0.1", "call_timeout": 10, "reconnect_delay": 1})
        self.assertEqual(result["x"], 3)

    def test_overlay_replaces_list(self):
        result = _deep_merge({"ports": [9222, 9223]}, {"ports": [9333]})
        self.assertEqual(result["ports"], [9333])

    def test_base_not_mutated(self):
        base = {"a": {"b": 1}}
        _deep_merge(base, {"a": {"b": 2}})
        self.assertEqual(base["a"]["b"], 1)


class TestAutoConvert(unittest.TestCase):

    def test_booleans(self):
        self.assertIs(_auto_convert("true"), True)
        self.assertIs(_auto_convert("Yes"), True)
        self.assertIs(_auto_convert("false"), False)
        self.assertIs(_auto_convert("no"), False)

    def test_one_and_zero_stay_numeric(self):
        self.assertEqual(_auto_convert("1"), 1)
        self.assertIsInstance(_auto_convert("1"), int)
        self.assertEqual(_auto_convert("0"), 0)
        self.assertEqual(_auto_convert("2.5"), 2.5)

    def test_string_passthrough(self):
        self.assertEqual(_auto_convert("127.0.0.1"), "127.0.0.1")


class TestLayers(_YamlDirCase):

    def test_missing_files_give_defaults(self):
        settings = self.load()
        self.assertEqual(settings.env, "dev")
        self.assertEqual(settings.sources, ())
        self.assertEqual(settings.monitor_config(), MonitorConfig())
        self.assertEqual(settings.channel_options().call_timeout, 30.0)

    def test_overlay_merges_over_base(self):
        self._write_yaml("watch_config.yaml", {
            "monitor": {"poll_interval": 1.0, "max_duration": 300},
        })
        self._write_yaml("config/prod.yaml", {"monitor": {"poll_interval": 2.0}})
        settings = self.load("prod")
        self.assertEqual(settings.get("monitor.poll_interval"), 2.0)
        self.assertEqual(settings.get("monitor.max_duration"), 300)
        self.assertEqual(settings.sources, ("watch_config.yaml", "config/prod.yaml"))

    def test_env_selected_from_environment(self):
        self._write_yaml("config/prod.yaml", {"channel": {"reconnect_delay": 7}})
        settings = self.load(RW_ENV="prod")
        self.assertEqual(settings.env, "prod")
        self.assertEqual(settings.channel_options().reconnect_delay, 7.0)

    def test_env_variables_beat_overlay(self):
        self._write_yaml("config/prod.yaml", {"monitor": {"max_duration": 600}})
        settings = self.load("prod", RW_MAX_DURATION="60", RW_MAX_RECONNECT_ATTEMPTS="1")
        self.assertEqual(settings.monitor_config().max_duration, 60.0)
        self.assertEqual(settings.channel_options().max_reconnect_attempts, 1)
        self.assertEqual(settings.sources[-1], "environment")

    def test_arbitrary_path_override(self):
        settings = self.load(RW_CONFIG__noise__include_defaults="false")
        self.assertIs(settings.get("noise.include_defaults"), False)
        self.assertEqual(settings.section("noise"), {"include_defaults": False})

    def test_get_missing_path(self):
        settings = WatchSettings(env="dev", data={"logging": {"level": "INFO"}})
        self.assertEqual(settings.get("logging.level"), "INFO")
        self.assertEqual(settings.get("logging.level.name", "x"), "x")
        self.assertEqual(settings.get("monitor.poll_interval", 1.0), 1.0)
        self.assertEqual(settings.section("probes"), {})


class TestValidation(_YamlDirCase):

    def test_unknown_section_and_keys_warned(self):
        self._write_yaml("watch_config.yaml", {
            "chanel": {"host": "10.0.0.1"},
            "channel": {"call_timout": 5, "targets": {}, "contexts": {}},
            "monitor": {"poll_interval": 0.5, "stop_stabel": 1},
        })
        with self.assertLogs("remote_watch.config", level="WARNING") as logs:
            settings = self.load()
        output = "\n".join(logs.output)
        self.assertIn("'chanel'", output)
        self.assertIn("channel.call_timout", output)
        self.assertIn("monitor.stop_stabel", output)
        self.assertNotIn("channel.targets", output)
        self.assertEqual(settings.monitor_config().poll_interval, 0.5)

    def test_section_must_be_mapping(self):
        self._write_yaml("watch_config.yaml", {"monitor": [1, 2]})
        with self.assertRaises(ConfigError) as cm:
            self.load()
        self.assertIn("monitor", str(cm.exception))

    def test_overlay_must_be_mapping(self):
        self._write_yaml("config/dev.yaml", ["not", "a", "mapping"])
        with self.assertRaises(ConfigError):
            self.load()

    def test_bad_value_raises_config_error(self):
        self._write_yaml("watch_config.yaml", {"monitor": {"poll_interval": "soon"}})
        settings = self.load()
        with self.assertRaises(ConfigError) as cm:
            settings.monitor_config()
        self.assertIn("monitor", str(cm.exception))

    def test_bad_ports_raise_config_error(self):
        settings = WatchSettings(env="dev", data={"channel": {"ports": 9222}})
        with self.assertRaises(ConfigError):
            settings.channel_options()


class TestTypedSections(unittest.TestCase):

    def test_monitor_config_from_section(self):
        cfg = MonitorConfig.from_config({"poll_interval": "0.5", "stop_gone_ticks": 4})
        self.assertEqual(cfg.poll_interval, 0.5)
        self.assertEqual(cfg.stop_gone_ticks, 4)
        self.assertEqual(cfg.fallback_stable, 60.0)

    def test_channel_options_from_section(self):
        opts = ChannelOptions.from_config({
            "ports": [9222],
            "call_timeout": 5,
            "targets": {"title_keywords": ["MyApp"]},
            "contexts": {"primary_patterns": ["main-panel"]},
        })
        self.assertEqual(opts.ports, (9222,))
        self.assertEqual(opts.call_timeout, 5.0)
        self.assertEqual(opts.max_reconnect_attempts, 3)
        self.assertEqual(opts.rules.title_keywords, ("MyApp",))
        self.assertEqual(opts.priority.primary_patterns, ("main-panel",))

    def test_shipped_config_builds_options(self):
        with patch.dict(os.environ, _clean_env(), clear=True):
            settings = load_config(env="prod", project_root=_base)
        opts = settings.channel_options()
        monitor = settings.monitor_config()
        self.assertEqual(opts.ports[0], 9222)
        self.assertEqual(opts.max_reconnect_attempts, 5)
        self.assertEqual(monitor.poll_interval, 2.0)
        self.assertEqual(monitor.stop_stable, 2.5)
        self.assertEqual(settings.get("logging.level"), "WARNING")


if __name__ == "__main__":
    unittest.main()
