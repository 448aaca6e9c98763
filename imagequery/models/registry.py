"""Model registry: builds adapters from config and tracks their health."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List
import json
import time
import logging

from imagequery.config import Config
from imagequery.models.base import AdapterResult, ModelAdapter
from imagequery.models.gemini import GeminiAdapter
from imagequery.models.huggingface import HuggingFaceAdapter

logger = logging.getLogger(__name__)

AUTO = "auto"


def _gemini(card: Dict[str, Any], api_key: str, timeout: float, generation: Dict[str, Any]) -> ModelAdapter:
    kwargs: Dict[str, Any] = {}
    if card.get("base_url"):
        kwargs["base_url"] = card["base_url"]
    return GeminiAdapter(
        adapter_id=card["id"],
        model=card.get("model", "gemini-2.5-flash"),
        api_key=api_key,
        timeout=timeout,
        generation=generation,
        display_name=card.get("display_name"),
        **kwargs,
    )


def _huggingface(card: Dict[str, Any], api_key: str, timeout: float, generation: Dict[str, Any]) -> ModelAdapter:
    kwargs: Dict[str, Any] = {}
    if card.get("base_url"):
        kwargs["base_url"] = card["base_url"]
    return HuggingFaceAdapter(
        adapter_id=card["id"],
        model=card.get("model", "microsoft/DialoGPT-large"),
        api_key=api_key,
        timeout=timeout,
        fallback_models=card.get("fallback_models"),
        generation=generation,
        display_name=card.get("display_name"),
        **kwargs,
    )


ADAPTER_KINDS: Dict[str, Callable[..., ModelAdapter]] = {
    "gemini": _gemini,
    "huggingface": _huggingface,
}


@dataclass
class ModelRegistry:
    """Adapters in priority order (first = highest priority)."""

    adapters: List[ModelAdapter]
    health_path: Path | None = None
    metrics: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: Config) -> "ModelRegistry":
        adapters: List[ModelAdapter] = []
        for card in config.adapters:
            kind = card.get("kind", card.get("id"))
            factory = ADAPTER_KINDS.get(kind)
            if factory is None:
                logger.warning(f"Unknown adapter kind '{kind}' for {card.get('id')}, skipping")
                continue
            api_key = config.api_keys.get(card.get("api_key_name", kind), "")
            adapter = factory(card, api_key, config.adapter_timeout_seconds, config.generation)
            if card.get("supports_images") is not None:
                # a card can switch vision off, never on
                adapter.supports_images = adapter.supports_images and bool(card["supports_images"])
            adapters.append(adapter)
        health = config.models.get("health_path")
        return cls(adapters, Path(health).expanduser() if health else None)

    def list_models(self) -> List[Dict[str, Any]]:
        return [
            {**adapter.describe(), "priority": index, "metrics": self.metrics.get(adapter.adapter_id, {})}
            for index, adapter in enumerate(self.adapters)
        ]

    def get(self, adapter_id: str) -> ModelAdapter | None:
        for adapter in self.adapters:
            if adapter.adapter_id == adapter_id:
                return adapter
        return None

    def priority(self, adapter_id: str) -> int:
        for index, adapter in enumerate(self.adapters):
            if adapter.adapter_id == adapter_id:
                return index
        return len(self.adapters)

    def resolve(self, selection: str | None) -> List[ModelAdapter]:
        """Adapters for a selection: every adapter for "auto", else the named one."""
        if not selection or selection == AUTO:
            return list(self.adapters)
        adapter = self.get(selection)
        if adapter is None:
            raise KeyError(f"unknown model '{selection}'")
        return [adapter]

    def record(self, result: AdapterResult) -> None:
        entry = self.metrics.setdefault(result.adapter_id, {"calls": 0, "failures": 0})
        entry["calls"] += 1
        if not result.ok:
            entry["failures"] += 1
            entry["last_failure"] = result.failure.value if result.failure else "error"
        entry["last_latency_ms"] = round(result.latency_ms, 1)
        entry["updated_at"] = time.strftime("%Y-%m-%dT%H:%M:%S")
        self._update_health(result.adapter_id, entry)

    def _update_health(self, adapter_id: str, observation: Dict[str, Any]) -> None:
        if self.health_path is None:
            return
        try:
            self.health_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                existing = json.loads(self.health_path.read_text())
            except Exception:
                existing = {"models": {}}
            existing.setdefault("models", {})[adapter_id] = dict(observation)
            self.health_path.write_text(json.dumps(existing, indent=2))
        except OSError:
            logger.warning("Failed to write model health", exc_info=True)
