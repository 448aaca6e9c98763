"""Tests for imagequery.dispatch module."""
import asyncio
import unittest

from imagequery.dispatch import DispatchEngine, ScoringWeights, word_overlap
from imagequery.errors import AllAdaptersFailed, DispatchTimeout, FailureKind, NoCapableAdapter
from imagequery.models.base import AdapterResult
from imagequery.models.registry import ModelRegistry

from fakes import FakeAdapter, context, make_engine


class TestSelection(unittest.TestCase):
    def test_higher_confidence_wins(self):
        engine = make_engine(FakeAdapter("a"), FakeAdapter("b"))
        a = AdapterResult("a", ok=True, text="x", confidence=0.7, latency_ms=10)
        b = AdapterResult("b", ok=True, text="y", confidence=0.9, latency_ms=500)
        self.assertEqual(engine.select([a, b]).adapter_id, "b")

    def test_equal_score_prefers_lower_latency(self):
        engine = make_engine(FakeAdapter("a"), FakeAdapter("b"))
        a = AdapterResult("a", ok=True, confidence=0.8, latency_ms=300)
        b = AdapterResult("b", ok=True, confidence=0.8, latency_ms=100)
        self.assertEqual(engine.select([a, b]).adapter_id, "b")

    def test_full_tie_prefers_registry_priority(self):
        engine = make_engine(FakeAdapter("a"), FakeAdapter("b"))
        b = AdapterResult("b", ok=True, confidence=0.8, latency_ms=100)
        a = AdapterResult("a", ok=True, confidence=0.8, latency_ms=100)
        self.assertEqual(engine.select([b, a]).adapter_id, "a")

    def test_latency_weight_penalises_slow_answers(self):
        weights = ScoringWeights(confidence_weight=1.0, latency_weight=0.1)
        engine = DispatchEngine(ModelRegistry([FakeAdapter("a"), FakeAdapter("b")]), weights=weights)
        a = AdapterResult("a", ok=True, confidence=0.9, latency_ms=3000)
        b = AdapterResult("b", ok=True, confidence=0.8, latency_ms=100)
        self.assertEqual(engine.select([a, b]).adapter_id, "b")

    def test_word_overlap(self):
        self.assertEqual(word_overlap("a cat", "a cat"), 1.0)
        self.assertEqual(word_overlap("", ""), 0.0)
        self.assertAlmostEqual(word_overlap("a red cat", "a blue cat"), 0.5)


class TestCandidates(unittest.TestCase):
    def test_images_exclude_text_only_adapters(self):
        engine = make_engine(FakeAdapter("text"), FakeAdapter("vision", supports_images=True))
        adapters = engine.candidates("auto", needs_images=True)
        self.assertEqual([a.adapter_id for a in adapters], ["vision"])

    def test_images_on_text_only_model(self):
        engine = make_engine(FakeAdapter("text"))
        with self.assertRaises(NoCapableAdapter):
            engine.candidates("text", needs_images=True)

    def test_unknown_model(self):
        engine = make_engine(FakeAdapter("a"))
        with self.assertRaises(NoCapableAdapter):
            engine.candidates("missing", needs_images=False)

    def test_auto_skips_adapters_without_key(self):
        engine = make_engine(FakeAdapter("a", api_key=""), FakeAdapter("b"))
        self.assertEqual([a.adapter_id for a in engine.candidates("auto", False)], ["b"])

    def test_auto_without_any_key(self):
        engine = make_engine(FakeAdapter("a", api_key=""))
        with self.assertRaises(NoCapableAdapter):
            engine.candidates("auto", False)


class TestDispatch(unittest.IsolatedAsyncioTestCase):
    async def test_auto_picks_best_of_all(self):
        a = FakeAdapter("a", text="a red cat", confidence=0.7)
        b = FakeAdapter("b", text="a black cat", confidence=0.9)
        outcome = await make_engine(a, b).dispatch(context())
        self.assertEqual(outcome.mode, "auto")
        self.assertEqual(outcome.best.adapter_id, "b")
        self.assertEqual(outcome.best.text, "a black cat")
        self.assertEqual(len(outcome.successes), 2)
        self.assertIsNotNone(outcome.agreement)

    async def test_partial_failure_still_answers(self):
        a = FakeAdapter("a", failure=FailureKind.RATE_LIMITED, error="quota")
        b = FakeAdapter("b", text="fine")
        outcome = await make_engine(a, b).dispatch(context())
        self.assertEqual(outcome.best.adapter_id, "b")
        failed = [r for r in outcome.results if not r.ok]
        self.assertEqual(failed[0].failure, FailureKind.RATE_LIMITED)
        self.assertIn("1 failed", outcome.reasoning)

    async def test_all_fail_names_every_reason(self):
        a = FakeAdapter("a", failure=FailureKind.RATE_LIMITED, error="quota")
        b = FakeAdapter("b", failure=FailureKind.NETWORK_ERROR, error="down")
        with self.assertRaises(AllAdaptersFailed) as ctx:
            await make_engine(a, b).dispatch(context())
        message = str(ctx.exception)
        self.assertIn("a: rate_limited (quota)", message)
        self.assertIn("b: network_error (down)", message)
        self.assertNotIsInstance(ctx.exception, DispatchTimeout)

    async def test_images_on_text_only_fails_before_network(self):
        a = FakeAdapter("a")
        with self.assertRaises(NoCapableAdapter):
            await make_engine(a).dispatch(context(images=["cat.png"]), "a")
        self.assertEqual(a.calls, [])

    async def test_single_mode_queries_only_that_model(self):
        a = FakeAdapter("a")
        b = FakeAdapter("b", confidence=1.0)
        outcome = await make_engine(a, b).dispatch(context(), "a")
        self.assertEqual(outcome.mode, "single")
        self.assertEqual(outcome.best.adapter_id, "a")
        self.assertEqual(b.calls, [])

    async def test_single_mode_failure(self):
        a = FakeAdapter("a", failure=FailureKind.UNAUTHORIZED, error="bad key")
        with self.assertRaises(AllAdaptersFailed) as ctx:
            await make_engine(a).dispatch(context(), "a")
        self.assertIn("unauthorized", str(ctx.exception))

    async def test_deadline_keeps_fast_answer_and_cancels_slow(self):
        fast = FakeAdapter("fast", text="quick")
        slow = FakeAdapter("slow", delay=10)
        outcome = await make_engine(fast, slow, turn_timeout=0.2).dispatch(context())
        self.assertEqual(outcome.best.adapter_id, "fast")
        self.assertTrue(slow.cancelled)

    async def test_deadline_without_answer(self):
        slow = FakeAdapter("slow", delay=10)
        with self.assertRaises(DispatchTimeout) as ctx:
            await make_engine(slow, turn_timeout=0.1).dispatch(context())
        self.assertIn("Timed out after 0.1s", str(ctx.exception))
        self.assertTrue(slow.cancelled)

    async def test_cancelling_dispatch_cancels_adapters(self):
        slow = FakeAdapter("slow", delay=10)
        task = asyncio.ensure_future(make_engine(slow).dispatch(context()))
        await slow.started.wait()
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertTrue(slow.cancelled)

    async def test_results_recorded_in_registry(self):
        a = FakeAdapter("a")
        b = FakeAdapter("b", failure=FailureKind.TIMEOUT)
        engine = make_engine(a, b)
        await engine.dispatch(context())
        self.assertEqual(engine.registry.metrics["a"]["calls"], 1)
        self.assertEqual(engine.registry.metrics["b"]["failures"], 1)
        self.assertEqual(engine.registry.metrics["b"]["last_failure"], "timeout")


if __name__ == "__main__":
    unittest.main()
