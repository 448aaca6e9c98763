"""Tests for imagequery.config and the model registry built from it."""
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from imagequery.config import Config, get_config, load_config
from imagequery.dispatch import DispatchEngine
from imagequery.errors import NoCapableAdapter
from imagequery.models.base import AdapterResult
from imagequery.models.gemini import GeminiAdapter
from imagequery.models.huggingface import HuggingFaceAdapter
from imagequery.models.registry import ModelRegistry


class TestConfig(unittest.TestCase):
    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = get_config(Path("/nonexistent/config.yaml"))
        self.assertEqual(config.window_size, 20)
        self.assertEqual(config.adapter_timeout_seconds, 30.0)
        self.assertEqual(config.turn_timeout_seconds, 45.0)
        self.assertEqual(config.default_model, "auto")
        self.assertEqual([a["id"] for a in config.adapters], ["gemini", "huggingface"])

    def test_user_file_is_merged(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.yaml"
            path.write_text("context:\n  window_size: 8\ndispatch:\n  scoring:\n    latency_weight: 0.05\n")
            with patch.dict(os.environ, {}, clear=True):
                config = get_config(path)
        self.assertEqual(config.window_size, 8)
        self.assertEqual(config.scoring["latency_weight"], 0.05)
        self.assertEqual(config.scoring["confidence_weight"], 1.0)
        self.assertEqual(config.turn_timeout_seconds, 45.0)

    def test_environment_overrides(self):
        env = {
            "IMAGEQUERY_DATA_DIR": "/tmp/iq",
            "IMAGEQUERY_PORT": "9000",
            "IMAGEQUERY_MODEL": "gemini",
            "IMAGEQUERY_WINDOW_SIZE": "10",
            "IMAGEQUERY_TURN_TIMEOUT": "12.5",
            "IMAGEQUERY_LOG_LEVEL": "debug",
            "GEMINI_API_KEY": "g-key",
            "HUGGINGFACE_API_KEY": "h-key",
        }
        with patch.dict(os.environ, env, clear=True):
            raw = load_config(Path("/nonexistent/config.yaml"))
        config = Config(raw)
        self.assertEqual(config.data_dir, Path("/tmp/iq"))
        self.assertEqual(config.server["port"], 9000)
        self.assertEqual(config.default_model, "gemini")
        self.assertEqual(config.window_size, 10)
        self.assertEqual(config.turn_timeout_seconds, 12.5)
        self.assertEqual(config.log_level, "DEBUG")
        self.assertEqual(config.api_keys, {"gemini": "g-key", "huggingface": "h-key"})

    def test_bad_numbers_are_ignored(self):
        with patch.dict(os.environ, {"IMAGEQUERY_PORT": "abc", "IMAGEQUERY_TURN_TIMEOUT": "soon"}, clear=True):
            config = get_config(Path("/nonexistent/config.yaml"))
        self.assertEqual(config.server["port"], 8095)
        self.assertEqual(config.turn_timeout_seconds, 45.0)


class TestRegistryFromConfig(unittest.TestCase):
    def _config(self, **api_keys):
        with patch.dict(os.environ, {}, clear=True):
            raw = load_config(Path("/nonexistent/config.yaml"))
        raw["api_keys"] = api_keys
        raw["models"]["health_path"] = None
        return Config(raw)

    def test_adapters_in_priority_order(self):
        registry = ModelRegistry.from_config(self._config(gemini="g-key"))
        self.assertIsInstance(registry.adapters[0], GeminiAdapter)
        self.assertIsInstance(registry.adapters[1], HuggingFaceAdapter)
        self.assertEqual(registry.priority("gemini"), 0)
        self.assertEqual(registry.priority("huggingface"), 1)
        self.assertTrue(registry.get("gemini").available)
        self.assertFalse(registry.get("huggingface").available)
        self.assertEqual(registry.get("huggingface").fallback_models[0], "facebook/blenderbot-400M-distill")

    def test_resolve(self):
        registry = ModelRegistry.from_config(self._config())
        self.assertEqual(len(registry.resolve("auto")), 2)
        self.assertEqual([a.adapter_id for a in registry.resolve("huggingface")], ["huggingface"])
        with self.assertRaises(KeyError):
            registry.resolve("gpt-9")

    def test_list_models_describes_capabilities(self):
        models = ModelRegistry.from_config(self._config()).list_models()
        by_id = {m["id"]: m for m in models}
        self.assertTrue(by_id["gemini"]["supports_images"])
        self.assertFalse(by_id["huggingface"]["supports_images"])

    def test_card_can_disable_images(self):
        config = self._config()
        config.raw["models"]["adapters"][0]["supports_images"] = False
        config.raw["models"]["adapters"][1]["supports_images"] = True
        registry = ModelRegistry.from_config(config)
        self.assertFalse(registry.get("gemini").supports_images)
        self.assertFalse(registry.get("huggingface").supports_images)
        engine = DispatchEngine.from_config(config, registry)
        with self.assertRaises(NoCapableAdapter):
            engine.candidates("auto", needs_images=True)

    def test_unknown_kind_is_skipped(self):
        config = self._config()
        config.raw["models"]["adapters"].append({"id": "mystery", "kind": "mystery"})
        registry = ModelRegistry.from_config(config)
        self.assertIsNone(registry.get("mystery"))

    def test_engine_from_config(self):
        config = self._config()
        engine = DispatchEngine.from_config(config, ModelRegistry.from_config(config))
        self.assertEqual(engine.turn_timeout, 45.0)
        self.assertEqual(engine.weights.confidence_weight, 1.0)

    def test_health_file_written(self):
        with tempfile.TemporaryDirectory() as tmp:
            registry = ModelRegistry([], health_path=Path(tmp) / "health.json")
            registry.record(AdapterResult("gemini", ok=True, latency_ms=120.0))
            registry.record(AdapterResult("gemini", ok=False, error="x"))
            text = (Path(tmp) / "health.json").read_text()
        self.assertIn('"calls": 2', text)
        self.assertIn('"failures": 1', text)


if __name__ == "__main__":
    unittest.main()
