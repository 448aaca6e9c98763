"""Native Gemini API adapter (vision + text)."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence

import httpx

from imagequery.context import ConversationContext, Turn
from imagequery.errors import AdapterError, FailureKind
from imagequery.messages import USER
from imagequery.models.base import (
    Completion,
    ModelAdapter,
    encode_image,
    estimate_confidence,
    image_placeholder,
    raise_for_status,
)

logger = logging.getLogger(__name__)


class GeminiAdapter(ModelAdapter):
    """Gemini ``generateContent`` over httpx."""

    supports_images = True

    MODEL_MAP = {
        "2.5-flash": "gemini-2.5-flash",
        "2.5-pro": "gemini-2.5-pro",
        "2.0-flash": "gemini-2.0-flash",
        "1.5-flash": "gemini-1.5-flash",
        "1.5-pro": "gemini-1.5-pro",
    }

    def __init__(
        self,
        adapter_id: str = "gemini",
        model: str = "gemini-2.5-flash",
        api_key: str | None = None,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 30.0,
        generation: Dict[str, Any] | None = None,
        display_name: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            adapter_id,
            self.MODEL_MAP.get(model, model),
            api_key=api_key,
            timeout=timeout,
            display_name=display_name,
            transport=transport,
        )
        self.base_url = base_url.rstrip("/")
        self.generation = dict(generation or {})

    def generation_config(self, history_turns: int) -> Dict[str, Any]:
        temperature = self.generation.get("temperature")
        if temperature is None:
            # longer conversations get a slightly more focused sampler
            if history_turns > 10:
                temperature = 0.6
            elif history_turns > 5:
                temperature = 0.65
            else:
                temperature = 0.7
        config: Dict[str, Any] = {"temperature": float(temperature)}
        if self.generation.get("top_p") is not None:
            config["topP"] = float(self.generation["top_p"])
        if self.generation.get("top_k") is not None:
            config["topK"] = int(self.generation["top_k"])
        if self.generation.get("max_tokens") is not None:
            config["maxOutputTokens"] = int(self.generation["max_tokens"])
        return config

    def build_body(self, context: ConversationContext, images: Sequence[str]) -> Dict[str, Any]:
        contents: List[Dict[str, Any]] = []
        for turn in context.history:
            history_parts = self._history_parts(turn)
            if not history_parts:
                continue
            contents.append({
                "role": "user" if turn.role == USER else "model",
                "parts": history_parts,
            })
        parts: List[Dict[str, Any]] = [{"text": context.prompt}]
        for path in images:
            parts.append({"inline_data": encode_image(path)})
        contents.append({"role": "user", "parts": parts})
        return {
            "contents": contents,
            "generationConfig": self.generation_config(len(context.history)),
        }

    def _history_parts(self, turn: Turn) -> List[Dict[str, Any]]:
        parts: List[Dict[str, Any]] = [{"text": turn.text}] if turn.text else []
        for path in turn.images:
            try:
                parts.append({"inline_data": encode_image(path)})
            except AdapterError as exc:
                # an earlier image that is gone is sent as text
                logger.warning(f"{self.adapter_id}: {exc.message}, sending a placeholder")
                parts.append({"text": image_placeholder(path)})
        return parts

    async def _request(self, context: ConversationContext, images: Sequence[str]) -> Completion:
        url = f"{self.base_url}/models/{self.model}:generateContent"
        body = self.build_body(context, images)
        async with self._client() as client:
            response = await client.post(url, params={"key": self.api_key}, json=body)
        raise_for_status(response)

        data = response.json()
        candidates = data.get("candidates") or []
        if not candidates:
            raise AdapterError(FailureKind.INVALID_RESPONSE, "No candidates in response")
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts).strip()
        if not text:
            raise AdapterError(FailureKind.INVALID_RESPONSE, "No valid response generated")

        confidence = estimate_confidence(
            text,
            finish_reason=candidate.get("finishReason"),
            has_history=bool(context.history),
        )
        return Completion(text=text, confidence=confidence, model_id=self.model)
