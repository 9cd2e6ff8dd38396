"""
Tests for the speculative scheduler.

Uses scripted draft and verify backends so every round's outcome is known in
advance.
"""

import asyncio
import logging
import threading
import time

import pytest

from minima_brain.errors import ConfigError
from minima_brain.scheduler import (
    SpeculativeScheduler,
    StopReason,
    create_speculative_scheduler,
)
from minima_brain.specdec.fake_lm import (
    FakeDraftModel,
    FakeTokenizer,
    FakeVerifier,
)
from minima_brain.specdec.interfaces import (
    DraftModel,
    DraftResult,
    Verifier,
    VerifyResult,
)


class ScriptedDraft(DraftModel):
    """Draft model returning the same tokens every round."""

    def __init__(self, tokens, confidence=0.99, delays=None):
        self.tokens = list(tokens)
        self.confidence = confidence
        self.delays = list(delays or [])
        self.counts = []

    async def draft(self, context, count):
        self.counts.append(count)
        if self.delays:
            await asyncio.sleep(self.delays.pop(0))
        return DraftResult(tokens=list(self.tokens), confidence=self.confidence)


class AcceptAllVerifier(Verifier):
    """Accepts every candidate and reports final on the given round."""

    def __init__(self, final_on_round=None):
        self.final_on_round = final_on_round
        self.calls = 0

    async def verify(self, context, candidates):
        self.calls += 1
        return VerifyResult(
            accepted=list(candidates), is_final=self.calls == self.final_on_round
        )


class ScriptedVerifier(Verifier):
    """Returns a scripted VerifyResult per round."""

    def __init__(self, results):
        self.results = list(results)

    async def verify(self, context, candidates):
        return self.results.pop(0)


class ThreadedDraft(DraftModel):
    """Draft model that blocks a worker thread and tracks overlapping calls."""

    def __init__(self, delays):
        self.delays = list(delays)
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def _work(self, delay):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(delay)
        with self._lock:
            self.active -= 1

    async def draft(self, context, count):
        delay = self.delays.pop(0) if self.delays else 0.0
        await asyncio.to_thread(self._work, delay)
        return DraftResult(tokens=["a"], confidence=0.99)


class TestSpeculativeGeneration:
    """Test the draft -> verify loop outcomes."""

    @pytest.mark.asyncio
    async def test_two_round_final_scenario(self):
        """Test full acceptance over two rounds with the lookahead doubling."""
        scheduler = SpeculativeScheduler()
        draft = ScriptedDraft(["a", "b", "c"], confidence=0.99)
        verifier = AcceptAllVerifier(final_on_round=2)

        result = await scheduler.generate(["Hello"], draft, verifier)

        assert result.text == "abcabc"
        assert result.tokens == ["a", "b", "c", "a", "b", "c"]
        assert result.rounds == 2
        assert result.stop_reason is StopReason.FINAL
        assert result.lookahead_history == [5, 10]
        assert draft.counts == [5, 10]

    @pytest.mark.asyncio
    async def test_partial_acceptance_contracts_lookahead(self):
        """Test that a rejection resets K to accepted + 1."""
        scheduler = SpeculativeScheduler()
        draft = ScriptedDraft(list("vwxyz"))
        verifier = ScriptedVerifier(
            [
                VerifyResult(accepted=["v", "w"]),
                VerifyResult(accepted=["v"], is_final=True),
            ]
        )

        result = await scheduler.generate([], draft, verifier)

        assert result.lookahead_history == [5, 3]
        assert result.tokens == ["v", "w", "v"]
        assert result.drafted == 8
        assert result.accepted == 3

    @pytest.mark.asyncio
    async def test_no_progress_stops(self):
        """Test that a round accepting nothing ends the call."""
        scheduler = SpeculativeScheduler()
        draft = ScriptedDraft(["a", "b"])
        verifier = ScriptedVerifier([VerifyResult(accepted=[])])

        result = await scheduler.generate([], draft, verifier)

        assert result.stop_reason is StopReason.NO_PROGRESS
        assert result.tokens == []
        assert result.text == ""
        assert result.rounds == 1

    @pytest.mark.asyncio
    async def test_non_prefix_verdict_truncated(self):
        """Test that only the true prefix of a verdict is kept."""
        scheduler = SpeculativeScheduler()
        draft = ScriptedDraft(["a", "b", "c"])
        verifier = ScriptedVerifier(
            [
                VerifyResult(accepted=["a", "x"]),
                VerifyResult(accepted=["a", "b"], is_final=True),
            ]
        )

        result = await scheduler.generate([], draft, verifier)

        assert result.tokens == ["a", "a", "b"]
        assert result.lookahead_history == [5, 2]

    @pytest.mark.asyncio
    async def test_draft_truncated_to_lookahead(self):
        """Test that over-long drafts are cut to the requested count."""
        scheduler = SpeculativeScheduler(initial_lookahead=2, min_lookahead=1)
        draft = ScriptedDraft(list("abcdef"), confidence=0.5)
        verifier = AcceptAllVerifier(final_on_round=1)

        result = await scheduler.generate([], draft, verifier)

        assert result.tokens == ["a", "b"]
        assert result.drafted == 2

    @pytest.mark.asyncio
    async def test_max_tokens_cap(self):
        """Test that the token cap truncates output and stops the call."""
        scheduler = SpeculativeScheduler(max_tokens=4)
        draft = ScriptedDraft(["a", "b", "c"])
        verifier = AcceptAllVerifier()

        result = await scheduler.generate([], draft, verifier)

        assert result.stop_reason is StopReason.MAX_TOKENS
        assert result.tokens == ["a", "b", "c", "a"]

    @pytest.mark.asyncio
    async def test_per_call_max_tokens_override(self):
        scheduler = SpeculativeScheduler(max_tokens=100)
        result = await scheduler.generate(
            [], ScriptedDraft(["a", "b"]), AcceptAllVerifier(), max_tokens=1
        )

        assert result.tokens == ["a"]

    @pytest.mark.asyncio
    async def test_max_output_chars(self):
        """Test the runaway guard on rendered output length."""
        scheduler = SpeculativeScheduler(max_output_chars=7)
        draft = ScriptedDraft(["ab", "cd"])
        verifier = AcceptAllVerifier()

        result = await scheduler.generate([], draft, verifier)

        assert result.stop_reason is StopReason.MAX_CHARS
        assert result.text == "abcdabcd"

    @pytest.mark.asyncio
    async def test_backend_error_propagates(self):
        """Test that non-timeout backend failures reach the caller."""

        class BrokenDraft(DraftModel):
            async def draft(self, context, count):
                raise RuntimeError("draft backend crashed")

        scheduler = SpeculativeScheduler()
        with pytest.raises(RuntimeError, match="crashed"):
            await scheduler.generate([], BrokenDraft(), AcceptAllVerifier())

    @pytest.mark.asyncio
    async def test_on_tokens_receives_chunks(self):
        """Test streaming of accepted chunks to sync and async callbacks."""
        scheduler = SpeculativeScheduler()
        sync_chunks = []
        async_chunks = []

        async def collect(chunk):
            async_chunks.append(chunk)

        await scheduler.generate(
            [],
            ScriptedDraft(["a", "b"]),
            AcceptAllVerifier(final_on_round=2),
            on_tokens=sync_chunks.append,
        )
        await scheduler.generate(
            [],
            ScriptedDraft(["a", "b"]),
            AcceptAllVerifier(final_on_round=2),
            on_tokens=collect,
        )

        assert sync_chunks == [["a", "b"], ["a", "b"]]
        assert async_chunks == sync_chunks

    @pytest.mark.asyncio
    async def test_concurrent_calls_do_not_share_state(self):
        """Test that each call adapts its own lookahead."""
        scheduler = SpeculativeScheduler()

        results = await asyncio.gather(
            scheduler.generate(
                [], ScriptedDraft(["a", "b", "c"]), AcceptAllVerifier(2)
            ),
            scheduler.generate(
                [],
                ScriptedDraft(["x", "y"]),
                ScriptedVerifier(
                    [VerifyResult(accepted=[]), VerifyResult(accepted=[])]
                ),
            ),
        )

        assert results[0].lookahead_history == [5, 10]
        assert results[1].lookahead_history == [5]
        assert scheduler.get_metrics()["total_calls"] == 2


class TestTimeoutsAndCancellation:
    """Test deadlines and cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_consecutive_timeouts_stop(self):
        """Test that repeated timeouts end the call with partial output."""
        scheduler = SpeculativeScheduler(draft_timeout=0.01)
        draft = ScriptedDraft(["a"], delays=[0.05, 0.05, 0.05])

        result = await scheduler.generate([], draft, AcceptAllVerifier())

        assert result.stop_reason is StopReason.TIMEOUTS
        assert result.timeouts == 3
        assert result.rounds == 0
        assert result.lookahead_history == [5, 1, 1]

    @pytest.mark.asyncio
    async def test_timeout_counts_as_rejection(self):
        """Test that a timed-out round contracts K and generation resumes."""
        scheduler = SpeculativeScheduler(verify_timeout=0.05)

        class SlowOnceVerifier(Verifier):
            def __init__(self):
                self.calls = 0

            async def verify(self, context, candidates):
                self.calls += 1
                if self.calls == 1:
                    await asyncio.sleep(0.2)
                return VerifyResult(accepted=list(candidates), is_final=True)

        result = await scheduler.generate(
            [], ScriptedDraft(["a", "b"]), SlowOnceVerifier()
        )

        assert result.stop_reason is StopReason.FINAL
        assert result.timeouts == 1
        assert result.tokens == ["a"]
        assert result.lookahead_history == [5, 1]

    @pytest.mark.asyncio
    async def test_timed_out_thread_call_finishes_before_next_round(self):
        """Test that a late worker-thread call never overlaps the next round."""
        scheduler = SpeculativeScheduler(draft_timeout=0.1)
        draft = ThreadedDraft(delays=[0.3, 0.0])

        result = await scheduler.generate(
            [], draft, AcceptAllVerifier(final_on_round=1)
        )

        assert draft.peak == 1
        assert result.timeouts == 1
        assert result.stop_reason is StopReason.FINAL
        assert result.tokens == ["a"]

    @pytest.mark.asyncio
    async def test_late_failure_of_timed_out_call_is_absorbed(self, caplog):
        scheduler = SpeculativeScheduler(draft_timeout=0.01)

        class FailsLateDraft(DraftModel):
            def __init__(self):
                self.calls = 0

            async def draft(self, context, count):
                self.calls += 1
                if self.calls == 1:
                    await asyncio.sleep(0.05)
                    raise RuntimeError("late draft failure")
                return DraftResult(tokens=["a"], confidence=0.99)

        with caplog.at_level(logging.WARNING):
            result = await scheduler.generate(
                [], FailsLateDraft(), AcceptAllVerifier(final_on_round=1)
            )

        assert result.timeouts == 1
        assert result.tokens == ["a"]
        assert "late draft failure" in caplog.text

    @pytest.mark.asyncio
    async def test_cancel_event_before_start(self):
        scheduler = SpeculativeScheduler()
        cancel = asyncio.Event()
        cancel.set()

        result = await scheduler.generate(
            [], ScriptedDraft(["a"]), AcceptAllVerifier(), cancel_event=cancel
        )

        assert result.stop_reason is StopReason.CANCELLED
        assert result.rounds == 0

    @pytest.mark.asyncio
    async def test_cancel_event_interrupts_inflight_call(self):
        """Test that setting the event aborts a slow backend call promptly."""
        scheduler = SpeculativeScheduler()
        draft = ScriptedDraft(["a"], delays=[0.0, 10.0])
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        result = await asyncio.wait_for(
            scheduler.generate(
                [], draft, AcceptAllVerifier(), cancel_event=cancel
            ),
            timeout=2.0,
        )

        assert result.stop_reason is StopReason.CANCELLED
        assert result.tokens == ["a"]
        assert result.rounds == 1

    @pytest.mark.asyncio
    async def test_cancelled_call_error_is_retrieved(self, caplog):
        """Test that a backend failing while being cancelled is logged."""
        scheduler = SpeculativeScheduler()

        class FailsOnCancelDraft(DraftModel):
            async def draft(self, context, count):
                try:
                    await asyncio.sleep(10.0)
                except asyncio.CancelledError:
                    raise RuntimeError("draft torn down")
                return DraftResult(tokens=["a"], confidence=0.99)

        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        with caplog.at_level(logging.WARNING):
            result = await scheduler.generate(
                [], FailsOnCancelDraft(), AcceptAllVerifier(), cancel_event=cancel
            )
            await asyncio.sleep(0.05)

        assert result.stop_reason is StopReason.CANCELLED
        assert "Abandoned backend call failed" in caplog.text
        assert "draft torn down" in caplog.text

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self):
        scheduler = SpeculativeScheduler()
        draft = ScriptedDraft(["a"], delays=[10.0])
        task = asyncio.ensure_future(
            scheduler.generate([], draft, AcceptAllVerifier())
        )
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task


class TestSchedulerConfiguration:
    """Test scheduler construction."""

    def test_invalid_lookahead_bounds(self):
        with pytest.raises(ConfigError):
            SpeculativeScheduler(min_lookahead=4, initial_lookahead=2)

    def test_invalid_max_output_chars(self):
        with pytest.raises(ConfigError):
            SpeculativeScheduler(max_output_chars=0)

    def test_factory_reads_config(self):
        scheduler = create_speculative_scheduler(
            {"controller": "fixed", "initial_lookahead": 3, "max_output_chars": 50}
        )

        assert scheduler.controller_type == "fixed"
        assert scheduler.initial_lookahead == 3
        assert scheduler.max_output_chars == 50

    def test_controller_info_logged_and_reported(self, caplog):
        with caplog.at_level(logging.INFO):
            scheduler = SpeculativeScheduler(initial_lookahead=4, tau=0.9)

        assert scheduler.get_metrics()["controller_info"] == {
            "controller": "confidence",
            "current_k": 4,
            "min_k": 1,
            "max_k": 32,
            "tau": 0.9,
        }
        assert "'current_k': 4" in caplog.text

    def test_fixed_controller_info(self):
        scheduler = SpeculativeScheduler(controller="fixed", initial_lookahead=3)

        assert scheduler.controller_info == {"controller": "fixed", "k": 3}

    @pytest.mark.asyncio
    async def test_fixed_controller_never_adapts(self):
        scheduler = SpeculativeScheduler(controller="fixed", initial_lookahead=3)
        result = await scheduler.generate(
            [], ScriptedDraft(["a"]), AcceptAllVerifier(final_on_round=3)
        )

        assert result.lookahead_history == [3, 3, 3]


class TestFakeBackends:
    """Test the scheduler against the seeded fake backends."""

    @pytest.mark.asyncio
    async def test_perfect_drafter_reproduces_reply(self):
        tokenizer = FakeTokenizer()
        reply = tokenizer.encode("Hello from the device.")
        scheduler = SpeculativeScheduler(detokenize=tokenizer.decode)

        result = await scheduler.generate(
            tokenizer.encode("User: hi\nAssistant: "),
            FakeDraftModel(reply, accuracy=1.0, seed=0),
            FakeVerifier(reply),
        )

        assert result.text == "Hello from the device."
        assert result.stop_reason is StopReason.FINAL
        assert result.acceptance_rate == 1.0

    @pytest.mark.asyncio
    async def test_noisy_drafter_is_reproducible(self):
        """Test that seeded errors give identical runs of reply prefixes."""
        tokenizer = FakeTokenizer()
        reply = tokenizer.encode("A somewhat longer reply for the noisy drafter.")
        scheduler = SpeculativeScheduler(detokenize=tokenizer.decode)

        runs = []
        for _ in range(2):
            runs.append(
                await scheduler.generate(
                    [],
                    FakeDraftModel(reply, accuracy=0.7, seed=42),
                    FakeVerifier(reply),
                )
            )

        assert runs[0].tokens == runs[1].tokens
        assert runs[0].lookahead_history == runs[1].lookahead_history
        assert reply[: len(runs[0].tokens)] == runs[0].tokens
        assert runs[0].stop_reason in (StopReason.FINAL, StopReason.NO_PROGRESS)
