import os
import sys
import pathlib
import unittest
from unittest import mock

_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

import config as cfg


class TestAppConfigLoad(unittest.TestCase):

    def setUp(self):
        patcher = mock.patch.object(cfg, "load_dotenv")
        self.load_dotenv = patcher.start()
        self.addCleanup(patcher.stop)

    def test_env_values_and_defaults(self):
        env = {
            "AZURE_OPENAI_API_KEY": "secret",
            "AZURE_OPENAI_ENDPOINT": "https://example.openai.azure.com",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = cfg.AppConfig.load()
        self.load_dotenv.assert_called_once()
        self.assertEqual(config.api_key, "secret")
        self.assertEqual(config.deployment, "gpt-4")
        self.assertEqual(config.model, "azure/gpt-4")
        self.assertEqual(config.api_version, "2024-02-01")
        self.assertEqual(config.mcp_port, 8123)
        self.assertEqual(config.mcp_url, "http://localhost:8123/mcp")
        self.assertEqual(config.max_tokens, 1000)
        self.assertEqual(config.max_tool_depth, 1)
        self.assertEqual(config.history_max_messages, 0)
        config.validate()

    def test_blank_deployment_falls_back_to_default(self):
        with mock.patch.dict(os.environ, {"AZURE_OPENAI_DEPLOYMENT": "  "}, clear=True):
            config = cfg.AppConfig.load()
        self.assertEqual(config.deployment, "gpt-4")

    def test_cli_args_override_env(self):
        env = {"MAX_TOKENS": "200", "LOG_LEVEL": "warning", "AZURE_OPENAI_DEPLOYMENT": "gpt-4o"}
        with mock.patch.dict(os.environ, env, clear=True):
            config = cfg.AppConfig.load({
                "mcp_port": 9000,
                "max_tokens": 512,
                "max_tool_depth": 3,
                "system_prompt": None,
                "log_level": None,
            })
        self.assertEqual(config.max_tokens, 512)
        self.assertEqual(config.mcp_port, 9000)
        self.assertEqual(config.max_tool_depth, 3)
        self.assertEqual(config.log_level, "WARNING")
        self.assertEqual(config.model, "azure/gpt-4o")
        self.assertEqual(config.system_prompt, "")

    def test_depth_and_window_are_clamped(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = cfg.AppConfig.load({"max_tool_depth": 0, "history_max_messages": -5})
        self.assertEqual(config.max_tool_depth, 1)
        self.assertEqual(config.history_max_messages, 0)

    def test_no_color_env(self):
        with mock.patch.dict(os.environ, {"NO_COLOR": "1"}, clear=True):
            self.assertFalse(cfg.AppConfig.load().use_color)
        with mock.patch.dict(os.environ, {}, clear=True):
            self.assertTrue(cfg.AppConfig.load().use_color)

    def test_missing_credentials(self):
        with mock.patch.dict(os.environ, {"AZURE_OPENAI_ENDPOINT": "https://x"}, clear=True):
            config = cfg.AppConfig.load()
        ok, missing = cfg.check_provider_auth(config)
        self.assertFalse(ok)
        self.assertEqual(missing, ["AZURE_OPENAI_API_KEY"])
        with self.assertRaises(cfg.ConfigurationError) as ctx:
            config.validate()
        self.assertIn("AZURE_OPENAI_API_KEY", str(ctx.exception))

    def test_provider_kwargs(self):
        config = cfg.AppConfig(api_key="k", endpoint="https://e", api_version="2024-06-01")
        self.assertEqual(config.provider_kwargs(),
                         {"api_key": "k", "api_base": "https://e", "api_version": "2024-06-01"})


class TestParsePort(unittest.TestCase):

    def test_valid(self):
        self.assertEqual(cfg.parse_port("8123"), 8123)
        self.assertEqual(cfg.parse_port(" 9000 "), 9000)

    def test_invalid(self):
        for value in ("abc", "", "12abc", "0", "70000", "-1"):
            with self.subTest(value=value):
                with self.assertRaises(ValueError):
                    cfg.parse_port(value)


class TestMetrics(unittest.TestCase):

    def test_update_and_summary(self):
        m = cfg.Metrics()
        m.update(10, 5)
        m.update(3)
        self.assertEqual(m.total_tokens, 18)
        self.assertEqual(m.requests, 2)
        self.assertEqual(m.summary(), "2 requests, 13/5/18 tokens")


if __name__ == "__main__":
    unittest.main()
