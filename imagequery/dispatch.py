"""Concurrent dispatch of one turn to one or more adapters, with best-answer selection.

Single mode queries one adapter and returns its result as soon as it
arrives. Auto mode queries every applicable adapter in parallel, waits for
all of them (bounded by the turn deadline) and keeps the highest-scoring
success. Whatever is still running when a decision is made is cancelled.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from imagequery.context import ConversationContext
from imagequery.errors import AllAdaptersFailed, DispatchTimeout, FailureKind, NoCapableAdapter
from imagequery.models.base import AdapterResult, ModelAdapter
from imagequery.models.registry import AUTO, ModelRegistry

logger = logging.getLogger(__name__)


@dataclass
class ScoringWeights:
    confidence_weight: float = 1.0
    latency_weight: float = 0.0  # penalty per second

    @classmethod
    def from_config(cls, config: Dict[str, float]) -> "ScoringWeights":
        return cls(
            confidence_weight=float(config.get("confidence_weight", 1.0)),
            latency_weight=float(config.get("latency_weight", 0.0)),
        )

    def score(self, result: AdapterResult) -> float:
        return self.confidence_weight * result.confidence - self.latency_weight * (result.latency_ms / 1000.0)


@dataclass
class DispatchOutcome:
    best: AdapterResult
    results: List[AdapterResult]
    mode: str
    reasoning: str = ""
    agreement: Optional[float] = None

    @property
    def successes(self) -> List[AdapterResult]:
        return [r for r in self.results if r.ok]

    def to_dict(self) -> Dict[str, object]:
        return {
            "mode": self.mode,
            "selected": self.best.adapter_id,
            "model_id": self.best.model_id,
            "confidence": self.best.confidence,
            "reasoning": self.reasoning,
            "agreement": self.agreement,
            "results": [r.to_dict() for r in self.results],
        }


def word_overlap(first: str, second: str) -> float:
    words_a = set(first.lower().split())
    words_b = set(second.lower().split())
    union = words_a | words_b
    return len(words_a & words_b) / len(union) if union else 0.0


@dataclass
class DispatchEngine:
    registry: ModelRegistry
    adapter_timeout: float = 30.0
    turn_timeout: float = 45.0
    cancel_grace: float = 1.0
    weights: ScoringWeights = field(default_factory=ScoringWeights)

    @classmethod
    def from_config(cls, config, registry: ModelRegistry) -> "DispatchEngine":
        return cls(
            registry=registry,
            adapter_timeout=config.adapter_timeout_seconds,
            turn_timeout=config.turn_timeout_seconds,
            cancel_grace=config.cancel_grace_seconds,
            weights=ScoringWeights.from_config(config.scoring),
        )

    def candidates(self, selection: str | None, needs_images: bool) -> List[ModelAdapter]:
        try:
            adapters = self.registry.resolve(selection)
        except KeyError as exc:
            raise NoCapableAdapter(str(exc.args[0])) from exc
        single = bool(selection) and selection != AUTO
        if needs_images:
            adapters = [a for a in adapters if a.supports_images]
            if not adapters:
                if single:
                    raise NoCapableAdapter(f"model '{selection}' cannot read images")
                raise NoCapableAdapter("no configured model can read images")
        if not single:
            adapters = [a for a in adapters if a.available]
            if not adapters:
                raise NoCapableAdapter("no model has credentials configured")
        return adapters

    def select(self, successes: Sequence[AdapterResult]) -> AdapterResult:
        """Highest score, then lower latency, then registry priority."""
        return min(
            successes,
            key=lambda r: (-self.weights.score(r), r.latency_ms, self.registry.priority(r.adapter_id)),
        )

    async def dispatch(
        self,
        context: ConversationContext,
        selection: str | None = AUTO,
    ) -> DispatchOutcome:
        images = list(context.images)
        adapters = self.candidates(selection, needs_images=bool(images))
        single = bool(selection) and selection != AUTO
        mode = "single" if single else "auto"

        cancel = asyncio.Event()
        tasks: Dict[asyncio.Task, ModelAdapter] = {
            asyncio.ensure_future(adapter.query(context, images, cancel=cancel)): adapter
            for adapter in adapters
        }
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.turn_timeout
        results: List[AdapterResult] = []
        pending = set(tasks)
        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.warning(f"Turn deadline of {self.turn_timeout:g}s reached with {len(pending)} model(s) pending")
                    break
                done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    results.append(self._collect(task, tasks[task]))
                if single and results:
                    break
        finally:
            if pending:
                await self._cancel_pending(pending, cancel)

        for result in results:
            self.registry.record(result)

        successes = [r for r in results if r.ok]
        if not successes:
            failures = results + [
                AdapterResult(
                    adapter_id=tasks[task].adapter_id,
                    ok=False,
                    model_id=tasks[task].model,
                    failure=FailureKind.TIMEOUT,
                    error="no answer before the turn deadline",
                )
                for task in pending
            ]
            if pending:
                raise DispatchTimeout(failures, self.turn_timeout)
            raise AllAdaptersFailed(failures)

        return self._outcome(successes, results, mode)

    def _collect(self, task: asyncio.Task, adapter: ModelAdapter) -> AdapterResult:
        if task.cancelled():
            return AdapterResult(adapter.adapter_id, ok=False, model_id=adapter.model,
                                 failure=FailureKind.CANCELLED, error="cancelled")
        exc = task.exception()
        if exc is not None:
            # adapters convert their own errors; anything else is a bug in the adapter
            logger.error(f"{adapter.adapter_id} raised unexpectedly", exc_info=exc)
            return AdapterResult(adapter.adapter_id, ok=False, model_id=adapter.model,
                                 failure=FailureKind.INVALID_RESPONSE, error=f"{exc.__class__.__name__}: {exc}")
        return task.result()

    async def _cancel_pending(self, pending: set, cancel: asyncio.Event) -> None:
        cancel.set()
        try:
            _, still_running = await asyncio.wait(pending, timeout=self.cancel_grace)
        finally:
            for task in pending:
                if not task.done():
                    task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)

    def _outcome(self, successes: List[AdapterResult], results: List[AdapterResult], mode: str) -> DispatchOutcome:
        best = self.select(successes)
        ranked = sorted(successes, key=lambda r: -self.weights.score(r))
        agreement = word_overlap(ranked[0].text, ranked[1].text) if len(ranked) > 1 else None
        if mode == "single":
            reasoning = f"Single model {best.adapter_id}"
        elif len(successes) == 1:
            reasoning = f"Only {best.adapter_id} answered ({len(results) - len(successes)} failed)"
        else:
            reasoning = (
                f"Selected {best.adapter_id} from {len(successes)} answers "
                f"(confidence {best.confidence:.2f}, agreement {agreement:.0%})"
            )
        logger.info(reasoning)
        return DispatchOutcome(best=best, results=results, mode=mode, reasoning=reasoning, agreement=agreement)
