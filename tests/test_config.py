import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from shipyard.config import AppConfig, load_config
from shipyard.errors import ValidationError

ENV_KEYS = (
    "SHIPYARD_SSH_HOST",
    "SHIPYARD_SSH_PORT",
    "SHIPYARD_SSH_USER",
    "SHIPYARD_SSH_KEY_PATH",
    "SHIPYARD_APP_DIR",
    "SHIPYARD_GIT_TOKEN",
)


class ConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        patcher = mock.patch.dict(os.environ)
        patcher.start()
        self.addCleanup(patcher.stop)
        for key in ENV_KEYS:
            os.environ.pop(key, None)
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.tmp = Path(self._tmp.name)

    def _write(self, payload: dict) -> str:
        path = self.tmp / "shipyard.json"
        path.write_text(json.dumps(payload), encoding="utf-8")
        return str(path)

    def test_defaults(self) -> None:
        config = AppConfig()
        self.assertEqual(config.deployment.default_branch, "main")
        self.assertEqual(config.deployment.app_dir, "/opt/app")
        self.assertEqual(config.retry.max_attempts, 3)
        self.assertEqual(config.health.path, "/health")
        self.assertTrue(config.proxy.enabled)

    def test_loads_custom_config(self) -> None:
        path = self._write(
            {
                "deployment": {"default_branch": "develop", "command_timeout": 60},
                "retry": {"max_attempts": 5},
                "proxy": {"enabled": False},
            }
        )
        config = load_config(path)
        self.assertEqual(config.deployment.default_branch, "develop")
        self.assertEqual(config.deployment.command_timeout, 60)
        self.assertEqual(config.deployment.app_dir, "/opt/app")
        self.assertEqual(config.retry.max_attempts, 5)
        self.assertFalse(config.proxy.enabled)

    def test_comment_keys_are_ignored(self) -> None:
        path = self._write({"deployment": {"_comment": "defaults for staging", "default_port": 2222}})
        config = load_config(path)
        self.assertEqual(config.deployment.default_port, 2222)

    def test_env_overrides_file(self) -> None:
        path = self._write({"deployment": {"default_host": "file.example.com"}})
        os.environ["SHIPYARD_SSH_HOST"] = "env.example.com"
        os.environ["SHIPYARD_SSH_PORT"] = "2200"
        os.environ["SHIPYARD_GIT_TOKEN"] = "ghp_from_environment"
        config = load_config(path)
        self.assertEqual(config.deployment.default_host, "env.example.com")
        self.assertEqual(config.deployment.default_port, 2200)
        self.assertEqual(config.deployment.default_git_token, "ghp_from_environment")

    def test_malformed_port_is_validation_error(self) -> None:
        os.environ["SHIPYARD_SSH_PORT"] = "22a"
        with self.assertRaises(ValidationError) as ctx:
            load_config(self._write({}))
        self.assertIn("SHIPYARD_SSH_PORT", str(ctx.exception))
        self.assertIn("'22a'", str(ctx.exception))
        self.assertEqual(ctx.exception.step, "Validate")
        self.assertIn("number", ctx.exception.hint)

    def test_missing_explicit_path(self) -> None:
        with self.assertRaises(FileNotFoundError):
            load_config(str(self.tmp / "missing.json"))


if __name__ == "__main__":
    unittest.main()
