"""Configuration loader for ImageQuery."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List
import os
import yaml

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "default.yaml"
USER_CONFIG_PATH = Path.home() / ".config" / "imagequery" / "config.yaml"


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _env_float(name: str) -> float | None:
    value = os.getenv(name)
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def load_config(path: Path | None = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    if DEFAULT_CONFIG_PATH.exists():
        data = yaml.safe_load(DEFAULT_CONFIG_PATH.read_text()) or {}
    user_path = path or USER_CONFIG_PATH
    if user_path.exists():
        override = yaml.safe_load(user_path.read_text()) or {}
        data = _deep_merge(data, override)

    # Environment overrides - Server
    host = os.getenv("IMAGEQUERY_HOST")
    port = os.getenv("IMAGEQUERY_PORT")
    if host:
        data.setdefault("server", {})["host"] = host
    if port:
        try:
            data.setdefault("server", {})["port"] = int(port)
        except ValueError:
            pass

    # Environment overrides - Data directory
    data_dir = os.getenv("IMAGEQUERY_DATA_DIR")
    if data_dir:
        data["data_dir"] = data_dir

    # Environment overrides - Credentials
    gemini_key = os.getenv("GEMINI_API_KEY")
    if gemini_key:
        data.setdefault("api_keys", {})["gemini"] = gemini_key
    hf_key = os.getenv("HUGGINGFACE_API_KEY")
    if hf_key:
        data.setdefault("api_keys", {})["huggingface"] = hf_key

    # Environment overrides - Model selection and context
    model = os.getenv("IMAGEQUERY_MODEL")
    if model:
        data.setdefault("models", {})["default"] = model
    window = os.getenv("IMAGEQUERY_WINDOW_SIZE")
    if window:
        try:
            data.setdefault("context", {})["window_size"] = int(window)
        except ValueError:
            pass

    # Environment overrides - Dispatch timeouts
    adapter_timeout = _env_float("IMAGEQUERY_ADAPTER_TIMEOUT")
    if adapter_timeout is not None:
        data.setdefault("dispatch", {})["adapter_timeout_seconds"] = adapter_timeout
    turn_timeout = _env_float("IMAGEQUERY_TURN_TIMEOUT")
    if turn_timeout is not None:
        data.setdefault("dispatch", {})["turn_timeout_seconds"] = turn_timeout

    log_level = os.getenv("IMAGEQUERY_LOG_LEVEL")
    if log_level:
        data.setdefault("logging", {})["level"] = log_level.upper()

    return data


@dataclass
class Config:
    raw: Dict[str, Any]

    @property
    def server(self) -> Dict[str, Any]:
        return self.raw.get("server", {})

    @property
    def data_dir(self) -> Path:
        default = str(Path.home() / ".imagequery")
        return Path(self.raw.get("data_dir", default)).expanduser()

    @property
    def models(self) -> Dict[str, Any]:
        return self.raw.get("models", {})

    @property
    def adapters(self) -> List[Dict[str, Any]]:
        return self.models.get("adapters", [])

    @property
    def default_model(self) -> str:
        return str(self.models.get("default", "auto"))

    @property
    def api_keys(self) -> Dict[str, str]:
        return self.raw.get("api_keys", {}) or {}

    @property
    def dispatch(self) -> Dict[str, Any]:
        return self.raw.get("dispatch", {})

    @property
    def context(self) -> Dict[str, Any]:
        return self.raw.get("context", {})

    @property
    def generation(self) -> Dict[str, Any]:
        return self.raw.get("generation", {})

    @property
    def window_size(self) -> int:
        """Number of history messages sent with each turn. Default 20."""
        return int(self.context.get("window_size", 20))

    @property
    def adapter_timeout_seconds(self) -> float:
        """Hard timeout for one adapter call. Default 30 seconds."""
        return float(self.dispatch.get("adapter_timeout_seconds", 30))

    @property
    def turn_timeout_seconds(self) -> float:
        """Outer deadline for a whole dispatch. Default 45 seconds."""
        return float(self.dispatch.get("turn_timeout_seconds", 45))

    @property
    def cancel_grace_seconds(self) -> float:
        return float(self.dispatch.get("cancel_grace_seconds", 1.0))

    @property
    def scoring(self) -> Dict[str, float]:
        return self.dispatch.get("scoring", {}) or {}

    @property
    def log_level(self) -> str:
        return str((self.raw.get("logging", {}) or {}).get("level", "INFO"))


def get_config(path: Path | None = None) -> Config:
    return Config(load_config(path))
