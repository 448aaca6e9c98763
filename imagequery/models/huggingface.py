"""HuggingFace Inference API adapter (text only)."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence

import httpx

from imagequery.context import ConversationContext
from imagequery.errors import AdapterError, FailureKind
from imagequery.messages import USER
from imagequery.models.base import (
    Completion,
    ModelAdapter,
    estimate_confidence,
    image_placeholder,
    raise_for_status,
)

logger = logging.getLogger(__name__)

TERMINAL_FAILURES = {FailureKind.UNAUTHORIZED, FailureKind.CANCELLED}


class HuggingFaceAdapter(ModelAdapter):
    supports_images = False

    def __init__(
        self,
        adapter_id: str = "huggingface",
        model: str = "microsoft/DialoGPT-large",
        api_key: str | None = None,
        base_url: str = "https://api-inference.huggingface.co",
        timeout: float = 30.0,
        fallback_models: List[str] | None = None,
        generation: Dict[str, Any] | None = None,
        display_name: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            adapter_id,
            model,
            api_key=api_key,
            timeout=timeout,
            display_name=display_name,
            transport=transport,
        )
        self.base_url = base_url.rstrip("/")
        self.fallback_models = list(fallback_models or [])
        self.generation = dict(generation or {})

    def build_prompt(self, context: ConversationContext) -> str:
        lines: List[str] = []
        for turn in context.history:
            speaker = "Human" if turn.role == USER else "Assistant"
            text = "\n".join([turn.text] + [image_placeholder(path) for path in turn.images])
            lines.append(f"{speaker}: {text}")
        lines.append(f"Human: {context.prompt}")
        lines.append("Assistant: ")
        return "\n\n".join(lines)

    def build_body(self, context: ConversationContext) -> Dict[str, Any]:
        return {
            "inputs": self.build_prompt(context),
            "parameters": {
                "max_new_tokens": int(self.generation.get("max_tokens") or 1000),
                "temperature": float(self.generation.get("temperature") or 0.7),
                "top_p": float(self.generation.get("top_p") or 0.9),
                "do_sample": True,
                "return_full_text": False,
            },
            "options": {"wait_for_model": True},
        }

    async def _request(self, context: ConversationContext, images: Sequence[str]) -> Completion:
        body = self.build_body(context)
        models = [self.model] + [m for m in self.fallback_models if m != self.model]
        last_error: AdapterError | None = None
        async with self._client() as client:
            for index, model in enumerate(models):
                try:
                    text = await self._generate(client, model, body)
                except AdapterError as exc:
                    if exc.kind in TERMINAL_FAILURES:
                        raise
                    logger.info(f"{self.adapter_id}: {model} failed ({exc.kind.value}), trying next model")
                    last_error = exc
                    continue
                except httpx.HTTPError as exc:
                    logger.info(f"{self.adapter_id}: {model} unreachable ({exc}), trying next model")
                    last_error = AdapterError(FailureKind.NETWORK_ERROR, str(exc) or exc.__class__.__name__)
                    continue
                model_id = model if index == 0 else f"{model} (fallback)"
                confidence = estimate_confidence(text, has_history=bool(context.history))
                return Completion(text=text, confidence=confidence, model_id=model_id)
        if last_error is not None and len(models) > 1:
            raise AdapterError(last_error.kind, f"all models failed, last error: {last_error.message}")
        raise last_error or AdapterError(FailureKind.INVALID_RESPONSE, "no models configured")

    async def _generate(self, client: httpx.AsyncClient, model: str, body: Dict[str, Any]) -> str:
        response = await client.post(
            f"{self.base_url}/models/{model}",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json=body,
        )
        raise_for_status(response)
        try:
            data = response.json()
        except ValueError as exc:
            raise AdapterError(FailureKind.INVALID_RESPONSE, f"unreadable body: {exc}") from exc
        if isinstance(data, dict) and data.get("error"):
            raise AdapterError(FailureKind.INVALID_RESPONSE, str(data["error"]))
        if isinstance(data, list) and data:
            text = (data[0] or {}).get("generated_text") or ""
            if text.strip():
                return text.strip()
        raise AdapterError(FailureKind.INVALID_RESPONSE, "No valid response generated")
