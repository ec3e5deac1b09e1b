import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch


class TestSettings(unittest.TestCase):
    def setUp(self) -> None:
        td = tempfile.TemporaryDirectory()
        self.addCleanup(td.cleanup)
        env = patch.dict(
            os.environ,
            {"AGENTRELAY_HOME": td.name, "AGENTRELAY_TELEGRAM_TOKEN": "", "AGENTRELAY_ALLOWED_CHAT_IDS": ""},
        )
        env.start()
        self.addCleanup(env.stop)

        from agentrelay.paths import default_paths

        self.paths = default_paths()

    def _write(self, text: str) -> None:
        Path(self.paths.settings).write_text(text, encoding="utf-8")

    def test_defaults_without_settings_file(self) -> None:
        from agentrelay.kernel.settings import load_config

        cfg = load_config(self.paths)
        self.assertEqual(cfg.watchdog.restart_cap, 3)
        self.assertEqual(cfg.watchdog.window_seconds, 3600)
        self.assertEqual(cfg.watchdog.escalate_after, 2)
        self.assertEqual(cfg.watchdog.components, ("controller", "bridge"))
        self.assertEqual(cfg.controller.max_parallel, 3)
        self.assertFalse(cfg.controller.auto_review)
        self.assertEqual(cfg.autofix.branch_prefix, "hotfix")
        self.assertEqual(cfg.autofix.test_command, (sys.executable, "-m", "pytest", "-q"))
        self.assertEqual(cfg.bridge.platform, "telegram")
        self.assertEqual(cfg.bridge.token, "")
        self.assertEqual(cfg.bridge.allowed_chat_ids, ())
        self.assertIn(".md", cfg.allowed_extensions)

    def test_yaml_overrides(self) -> None:
        from agentrelay.kernel.settings import load_config

        self._write(
            "controller:\n"
            "  max_parallel: 5\n"
            "  auto_review: 'yes'\n"
            "watchdog:\n"
            "  restart_cap: 1\n"
            "autofix:\n"
            "  test_command: make test\n"
            "plan_guard:\n"
            "  allowed_extensions: [md, .TXT]\n"
            "bridge:\n"
            "  token: from-file\n"
            "  allowed_chat_ids: [100, -200]\n"
        )
        cfg = load_config(self.paths)
        self.assertEqual(cfg.controller.max_parallel, 5)
        self.assertTrue(cfg.controller.auto_review)
        self.assertEqual(cfg.watchdog.restart_cap, 1)
        self.assertEqual(cfg.autofix.test_command, ("make", "test"))
        self.assertEqual(cfg.allowed_extensions, (".md", ".txt"))
        self.assertEqual(cfg.bridge.token, "from-file")
        self.assertEqual(cfg.bridge.allowed_chat_ids, ("100", "-200"))

    def test_malformed_values_fall_back(self) -> None:
        from agentrelay.kernel.settings import load_config

        self._write("controller:\n  max_parallel: lots\n  poll_interval_seconds: -3\nwatchdog: [1, 2]\n")
        cfg = load_config(self.paths)
        self.assertEqual(cfg.controller.max_parallel, 3)
        self.assertEqual(cfg.controller.poll_interval_seconds, 0.05)
        self.assertEqual(cfg.watchdog.restart_cap, 3)

    def test_unparseable_yaml_means_defaults(self) -> None:
        from agentrelay.kernel.settings import load_config, load_settings

        self._write("controller: [unclosed\n")
        self.assertEqual(load_settings(self.paths), {})
        self.assertEqual(load_config(self.paths).controller.max_parallel, 3)

    def test_environment_wins_for_secrets(self) -> None:
        from agentrelay.kernel.settings import load_config

        self._write("bridge:\n  token: from-file\n  allowed_chat_ids: [1]\n")
        with patch.dict(os.environ, {"AGENTRELAY_TELEGRAM_TOKEN": "from-env", "AGENTRELAY_ALLOWED_CHAT_IDS": "7, 8"}):
            cfg = load_config(self.paths)
        self.assertEqual(cfg.bridge.token, "from-env")
        self.assertEqual(cfg.bridge.allowed_chat_ids, ("7", "8"))

    def test_save_settings_round_trip(self) -> None:
        from agentrelay.kernel.settings import load_settings, save_settings

        save_settings({"log_level": "DEBUG", "controller": {"max_parallel": 2}}, self.paths)
        self.assertEqual(load_settings(self.paths)["controller"]["max_parallel"], 2)


if __name__ == "__main__":
    unittest.main()
