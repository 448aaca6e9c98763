"""Model adapter interface shared by every backend."""
from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import httpx

from imagequery.context import ConversationContext
from imagequery.errors import AdapterError, FailureKind

logger = logging.getLogger(__name__)

IMAGE_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
}

APOLOGY_MARKERS = ("sorry", "cannot", "unable")
CONTEXTUAL_MARKERS = (
    "as we discussed",
    "from the previous",
    "building on",
    "continuing from",
    "as mentioned",
    "referring to",
)


@dataclass
class AdapterResult:
    """Outcome of one adapter call: a success or a typed failure."""
    adapter_id: str
    ok: bool
    text: str = ""
    confidence: float = 0.0
    latency_ms: float = 0.0
    model_id: str = ""
    failure: FailureKind | None = None
    error: str | None = None

    def describe_failure(self) -> str:
        if self.ok:
            return "ok"
        kind = self.failure.value if self.failure else "error"
        return f"{kind} ({self.error})" if self.error else kind

    def to_dict(self) -> Dict[str, Any]:
        return {
            "adapter_id": self.adapter_id,
            "ok": self.ok,
            "model_id": self.model_id,
            "confidence": self.confidence,
            "latency_ms": round(self.latency_ms, 1),
            "failure": self.failure.value if self.failure else None,
            "error": self.error,
        }


@dataclass
class Completion:
    """What a concrete adapter's request returns on success."""
    text: str
    confidence: float
    model_id: str


def classify_status(status_code: int) -> FailureKind:
    if status_code in (401, 403):
        return FailureKind.UNAUTHORIZED
    if status_code == 429:
        return FailureKind.RATE_LIMITED
    if status_code in (408, 504):
        return FailureKind.TIMEOUT
    if status_code >= 500:
        return FailureKind.NETWORK_ERROR
    return FailureKind.INVALID_RESPONSE


def raise_for_status(response: httpx.Response) -> None:
    if response.status_code == 200:
        return
    raise AdapterError(
        classify_status(response.status_code),
        f"HTTP {response.status_code}: {response.text[:500]}",
    )


def estimate_confidence(
    text: str,
    finish_reason: str | None = None,
    has_history: bool = False,
    base: float = 0.8,
) -> float:
    """Heuristic confidence from finish reason and response shape, clamped to [0, 1]."""
    reason = (finish_reason or "").lower()
    if reason == "stop":
        confidence = 0.9
    elif reason in ("length", "max_tokens"):
        confidence = 0.7
    elif reason in ("content_filter", "safety"):
        confidence = 0.3
    else:
        confidence = base

    if len(text) < 10:
        confidence *= 0.6
    elif len(text) > 100:
        confidence *= 1.1

    lowered = text.lower()
    if has_history and any(marker in lowered for marker in CONTEXTUAL_MARKERS):
        confidence *= 1.15
    if any(marker in lowered for marker in APOLOGY_MARKERS):
        confidence *= 0.7
    return max(0.0, min(1.0, confidence))


def image_mime_type(path: str) -> str:
    suffix = Path(path).suffix.lower()
    if suffix in IMAGE_MIME_TYPES:
        return IMAGE_MIME_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path)
    if guessed and guessed.startswith("image/"):
        return guessed
    return "image/jpeg"


def encode_image(path: str) -> Dict[str, str]:
    try:
        data = Path(path).expanduser().read_bytes()
    except OSError as exc:
        raise AdapterError(FailureKind.INVALID_RESPONSE, f"cannot read image {path}: {exc}") from exc
    return {
        "mime_type": image_mime_type(path),
        "data": base64.b64encode(data).decode("ascii"),
    }


def image_placeholder(path: str) -> str:
    """Text stand-in for an earlier image the backend cannot be sent."""
    return f"[Image was attached: {path}]"


class ModelAdapter:
    """Base class for backends.

    Subclasses implement ``_request`` and raise ``AdapterError`` for typed
    failures. ``query`` adds the per-call timeout, cancellation, latency
    measurement and conversion of every error into an ``AdapterResult``.
    """

    supports_images: bool = False

    def __init__(
        self,
        adapter_id: str,
        model: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        display_name: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.adapter_id = adapter_id
        self.model = model
        self.api_key = api_key or ""
        self.timeout = timeout
        self.display_name = display_name or model
        self._transport = transport

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.adapter_id,
            "model": self.model,
            "display_name": self.display_name,
            "supports_images": self.supports_images,
            "available": self.available,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _request(self, context: ConversationContext, images: Sequence[str]) -> Completion:
        raise NotImplementedError

    async def query(
        self,
        context: ConversationContext,
        images: Sequence[str] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AdapterResult:
        images = list(images if images is not None else context.images)
        loop = asyncio.get_running_loop()
        start = loop.time()

        def _failed(kind: FailureKind, error: str) -> AdapterResult:
            return AdapterResult(
                adapter_id=self.adapter_id,
                ok=False,
                latency_ms=(loop.time() - start) * 1000,
                model_id=self.model,
                failure=kind,
                error=error,
            )

        if images and not self.supports_images:
            return _failed(FailureKind.INVALID_RESPONSE, f"{self.adapter_id} does not accept images")
        if not self.available:
            return _failed(FailureKind.UNAUTHORIZED, f"no API key configured for {self.adapter_id}")
        if cancel is not None and cancel.is_set():
            return _failed(FailureKind.CANCELLED, "cancelled before start")

        request = asyncio.ensure_future(asyncio.wait_for(self._request(context, images), self.timeout))
        waiter = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
        try:
            if waiter is not None:
                await asyncio.wait({request, waiter}, return_when=asyncio.FIRST_COMPLETED)
                if not request.done():
                    request.cancel()
                    await asyncio.gather(request, return_exceptions=True)
                    return _failed(FailureKind.CANCELLED, "cancelled")
            completion = await request
        except asyncio.TimeoutError:
            logger.warning(f"{self.adapter_id} timed out after {self.timeout}s")
            return _failed(FailureKind.TIMEOUT, f"timed out after {self.timeout:g}s")
        except AdapterError as exc:
            logger.warning(f"{self.adapter_id} failed: {exc.kind.value}: {exc.message}")
            return _failed(exc.kind, exc.message)
        except httpx.TimeoutException as exc:
            logger.warning(f"{self.adapter_id} HTTP timeout: {exc}")
            return _failed(FailureKind.TIMEOUT, str(exc) or "HTTP timeout")
        except httpx.HTTPError as exc:
            logger.warning(f"{self.adapter_id} network error: {exc}")
            return _failed(FailureKind.NETWORK_ERROR, str(exc) or exc.__class__.__name__)
        except ValueError as exc:
            logger.warning(f"{self.adapter_id} returned an unreadable body: {exc}")
            return _failed(FailureKind.INVALID_RESPONSE, str(exc))
        finally:
            if waiter is not None and not waiter.done():
                waiter.cancel()
            if not request.done():
                request.cancel()

        return AdapterResult(
            adapter_id=self.adapter_id,
            ok=True,
            text=completion.text,
            confidence=max(0.0, min(1.0, completion.confidence)),
            latency_ms=(loop.time() - start) * 1000,
            model_id=completion.model_id,
        )
