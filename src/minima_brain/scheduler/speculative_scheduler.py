"""
Speculative Scheduler

Runs the draft -> verify loop that produces the final token stream:

1. Draft `lookahead` tokens (plus a confidence) with the fast model
2. Verify them with the accurate model; it accepts a prefix and may signal stop
3. Append the accepted prefix to the output
4. Adapt the lookahead from the round's outcome

Rounds are strictly sequential. Backend calls carry deadlines; a timed-out
round counts as a rejection instead of failing the whole call. Setting the
optional cancel event stops the loop promptly and returns what was accepted.
"""

import asyncio
import inspect
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from ..errors import ConfigError, GenerationTimeout
from ..specdec.controllers import (
    CONFIDENCE_THRESHOLD,
    INITIAL_LOOKAHEAD,
    MAX_LOOKAHEAD,
    MIN_LOOKAHEAD,
    create_controller,
)
from ..specdec.interfaces import DraftModel, Token, Verifier

logger = logging.getLogger(__name__)

TokenCallback = Callable[[List[Token]], Optional[Awaitable[None]]]


class StopReason(str, Enum):
    FINAL = "final"
    MAX_CHARS = "max_chars"
    MAX_TOKENS = "max_tokens"
    NO_PROGRESS = "no_progress"
    CANCELLED = "cancelled"
    TIMEOUTS = "timeouts"


class _Cancelled(Exception):
    """Cancel event fired while a backend call was in flight."""


@dataclass
class SpeculationState:
    """Per-call speculation state; never shared between calls."""

    lookahead: int
    drafted_total: int = 0
    accepted_total: int = 0
    rounds: int = 0
    timeouts: int = 0
    lookahead_history: List[int] = field(default_factory=list)


@dataclass
class GenerationResult:
    """Outcome of one generate call."""

    tokens: List[Token]
    text: str
    stop_reason: StopReason
    rounds: int = 0
    drafted: int = 0
    accepted: int = 0
    timeouts: int = 0
    lookahead_history: List[int] = field(default_factory=list)
    latency_ms: float = 0.0

    @property
    def acceptance_rate(self) -> float:
        return self.accepted / self.drafted if self.drafted > 0 else 0.0

    @property
    def tokens_per_sec(self) -> float:
        if self.latency_ms <= 0:
            return 0.0
        return len(self.tokens) / (self.latency_ms / 1000.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "generated_tokens": list(self.tokens),
            "stop_reason": self.stop_reason.value,
            "rounds": self.rounds,
            "proposed": self.drafted,
            "accepted": self.accepted,
            "acceptance_rate": self.acceptance_rate,
            "timeouts": self.timeouts,
            "lookahead_history": list(self.lookahead_history),
            "latency_ms": self.latency_ms,
            "tokens_per_sec": self.tokens_per_sec,
        }


def render_tokens(tokens: Sequence[Token]) -> str:
    """Default rendering: string tokens are concatenated as-is."""
    return "".join(str(t) for t in tokens)


def _is_set(event: Optional[asyncio.Event]) -> bool:
    return event is not None and event.is_set()


def _consume_result(task: "asyncio.Future[Any]") -> None:
    # Retrieve the outcome of an abandoned backend call so a late failure is
    # logged instead of reported as never retrieved.
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.warning(f"Abandoned backend call failed: {error!r}")


class SpeculativeScheduler:
    """Scheduler for speculative decoding with adaptive lookahead."""

    def __init__(
        self,
        min_lookahead: int = MIN_LOOKAHEAD,
        max_lookahead: int = MAX_LOOKAHEAD,
        initial_lookahead: int = INITIAL_LOOKAHEAD,
        tau: float = CONFIDENCE_THRESHOLD,
        max_output_chars: int = 2000,
        max_tokens: Optional[int] = None,
        draft_timeout: Optional[float] = None,
        verify_timeout: Optional[float] = None,
        max_consecutive_timeouts: int = 3,
        controller: str = "confidence",
        detokenize: Optional[Callable[[Sequence[Token]], str]] = None,
    ):
        """
        Initialize the speculative scheduler.

        Args:
            min_lookahead: Minimum draft tokens per round
            max_lookahead: Maximum draft tokens per round
            initial_lookahead: Draft tokens in the first round
            tau: Confidence threshold for expanding the lookahead
            max_output_chars: Runaway guard on rendered output length
            max_tokens: Optional cap on accepted tokens
            draft_timeout: Deadline in seconds for each draft call
            verify_timeout: Deadline in seconds for each verify call
            max_consecutive_timeouts: Timed-out rounds in a row that end the call
            controller: Lookahead controller type ("confidence" or "fixed")
            detokenize: Renders accepted tokens to text (string join if None)
        """
        if max_output_chars <= 0:
            raise ConfigError(
                f"max_output_chars must be positive, got {max_output_chars}"
            )
        if max_consecutive_timeouts < 1:
            raise ConfigError("max_consecutive_timeouts must be >= 1")

        self.min_lookahead = min_lookahead
        self.max_lookahead = max_lookahead
        self.initial_lookahead = initial_lookahead
        self.tau = tau
        self.max_output_chars = max_output_chars
        self.max_tokens = max_tokens
        self.draft_timeout = draft_timeout
        self.verify_timeout = verify_timeout
        self.max_consecutive_timeouts = max_consecutive_timeouts
        self.controller_type = controller
        self.detokenize = detokenize or render_tokens

        # Validates the controller parameters up front.
        self.controller_info = self._new_controller().get_info()

        self.debug = os.getenv("MINIMA_DEBUG", "0").lower() in ("1", "true", "yes")
        self.reset_metrics()

        logger.info(
            f"SpeculativeScheduler initialized: controller={self.controller_info}, "
            f"max_output_chars={max_output_chars}"
        )

    def _new_controller(self):
        if self.controller_type == "fixed":
            return create_controller("fixed", k=self.initial_lookahead)
        return create_controller(
            self.controller_type,
            initial_k=self.initial_lookahead,
            min_k=self.min_lookahead,
            max_k=self.max_lookahead,
            tau=self.tau,
        )

    async def generate(
        self,
        prompt: Sequence[Token],
        draft_model: DraftModel,
        verifier: Verifier,
        cancel_event: Optional[asyncio.Event] = None,
        on_tokens: Optional[TokenCallback] = None,
        max_tokens: Optional[int] = None,
    ) -> GenerationResult:
        """
        Generate a response with speculative decoding.

        Args:
            prompt: Context tokens (system prompt, history and user turn)
            draft_model: Fast-path drafting capability
            verifier: Accurate-path verification capability
            cancel_event: When set, stop promptly and return accepted output
            on_tokens: Called with each non-empty accepted chunk, in order
            max_tokens: Per-call override of the accepted-token cap

        Returns:
            GenerationResult with the accepted tokens, text and metrics
        """
        start_time = time.time()
        controller = self._new_controller()
        state = SpeculationState(lookahead=controller.get_k())
        token_cap = max_tokens if max_tokens is not None else self.max_tokens

        context = list(prompt)
        output: List[Token] = []
        text = ""
        stop_reason: Optional[StopReason] = None
        consecutive_timeouts = 0

        while stop_reason is None:
            if cancel_event is not None and cancel_event.is_set():
                stop_reason = StopReason.CANCELLED
                break

            lookahead = controller.get_k()
            state.lookahead = lookahead
            state.lookahead_history.append(lookahead)
            candidates: List[Token] = []

            try:
                draft_start = time.time()
                draft = await self._call_backend(
                    draft_model.draft(context + output, lookahead),
                    self.draft_timeout,
                    "draft",
                    cancel_event,
                )
                self.metrics["draft_time_ms"] += (time.time() - draft_start) * 1000
                candidates = list(draft.tokens)[:lookahead]
                state.drafted_total += len(candidates)

                verify_start = time.time()
                verdict = await self._call_backend(
                    verifier.verify(context + output, candidates),
                    self.verify_timeout,
                    "verify",
                    cancel_event,
                )
                self.metrics["verification_time_ms"] += (
                    time.time() - verify_start
                ) * 1000
            except _Cancelled:
                stop_reason = StopReason.CANCELLED
                break
            except GenerationTimeout as e:
                state.timeouts += 1
                consecutive_timeouts += 1
                controller.update(len(candidates) or lookahead, 0, 0.0)
                logger.warning(f"{e}, treating round as rejected")
                if consecutive_timeouts >= self.max_consecutive_timeouts:
                    stop_reason = StopReason.TIMEOUTS
                continue

            consecutive_timeouts = 0
            state.rounds += 1
            verified = self._accepted_prefix(candidates, verdict.accepted)
            controller.update(len(candidates), len(verified), draft.confidence)

            if token_cap is not None:
                verified = verified[: max(token_cap - len(output), 0)]
            output.extend(verified)
            state.accepted_total += len(verified)
            if verified:
                text = self.detokenize(output)
                if on_tokens is not None:
                    result = on_tokens(list(verified))
                    if inspect.isawaitable(result):
                        await result

            if self.debug:
                logger.debug(
                    f"[SCHED] round={state.rounds} K={lookahead} "
                    f"accepted={len(verified)}/{len(candidates)} "
                    f"conf={draft.confidence:.2f} next_K={controller.get_k()}"
                )

            if verdict.is_final:
                stop_reason = StopReason.FINAL
            elif len(text) >= self.max_output_chars:
                stop_reason = StopReason.MAX_CHARS
            elif token_cap is not None and len(output) >= token_cap:
                stop_reason = StopReason.MAX_TOKENS
            elif not verified:
                stop_reason = StopReason.NO_PROGRESS

        latency_ms = (time.time() - start_time) * 1000
        self.metrics["total_calls"] += 1
        self.metrics["total_rounds"] += state.rounds
        self.metrics["total_proposed"] += state.drafted_total
        self.metrics["total_accepted"] += state.accepted_total
        self.metrics["total_timeouts"] += state.timeouts

        result = GenerationResult(
            tokens=output,
            text=text,
            stop_reason=stop_reason,
            rounds=state.rounds,
            drafted=state.drafted_total,
            accepted=state.accepted_total,
            timeouts=state.timeouts,
            lookahead_history=state.lookahead_history,
            latency_ms=latency_ms,
        )
        logger.info(
            f"Generation complete: stop={stop_reason.value}, rounds={state.rounds}, "
            f"accepted={state.accepted_total}/{state.drafted_total} "
            f"({result.acceptance_rate:.0%})"
        )
        return result

    async def _call_backend(
        self,
        coro: Awaitable[Any],
        timeout: Optional[float],
        phase: str,
        cancel_event: Optional[asyncio.Event],
    ) -> Any:
        task = asyncio.ensure_future(coro)
        done = await self._wait_for_call(task, timeout, cancel_event)
        timed_out = task not in done and not _is_set(cancel_event)
        if timed_out:
            # Thread-backed calls keep running after cancel(); let the late call
            # finish so the next round never overlaps it on the same model.
            logger.debug(f"{phase} call missed its {timeout}s deadline, draining")
            done = await self._wait_for_call(task, None, cancel_event)

        if task not in done:
            task.cancel()
            task.add_done_callback(_consume_result)
            raise _Cancelled()
        if timed_out:
            _consume_result(task)
            raise GenerationTimeout(phase, timeout)
        return task.result()

    @staticmethod
    async def _wait_for_call(
        task: "asyncio.Future[Any]",
        timeout: Optional[float],
        cancel_event: Optional[asyncio.Event],
    ) -> Set["asyncio.Future[Any]"]:
        waiters = {task}
        cancel_wait = None
        if cancel_event is not None:
            cancel_wait = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_wait)
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()
        return done

    @staticmethod
    def _accepted_prefix(
        candidates: List[Token], accepted: Sequence[Token]
    ) -> List[Token]:
        matched = 0
        for drafted, kept in zip(candidates, accepted):
            if drafted != kept:
                break
            matched += 1
        if matched != len(accepted):
            logger.warning(
                f"Verifier returned {len(accepted)} tokens that are not a prefix "
                f"of the draft, keeping the first {matched}"
            )
        return candidates[:matched]

    def get_metrics(self) -> Dict[str, Any]:
        """Get aggregate metrics across generate calls."""
        total_time = (
            self.metrics["verification_time_ms"] + self.metrics["draft_time_ms"]
        )
        acceptance_rate = (
            self.metrics["total_accepted"] / self.metrics["total_proposed"]
            if self.metrics["total_proposed"] > 0
            else 0.0
        )
        return {
            **self.metrics,
            "total_time_ms": total_time,
            "acceptance_rate": acceptance_rate,
            "controller": self.controller_type,
            "controller_info": dict(self.controller_info),
        }

    def reset_metrics(self) -> None:
        """Reset all metrics."""
        self.metrics = {
            "total_calls": 0,
            "total_rounds": 0,
            "total_proposed": 0,
            "total_accepted": 0,
            "total_timeouts": 0,
            "verification_time_ms": 0.0,
            "draft_time_ms": 0.0,
        }


def create_speculative_scheduler(
    config: Optional[Dict[str, Any]] = None,
    detokenize: Optional[Callable[[Sequence[Token]], str]] = None,
) -> SpeculativeScheduler:
    """
    Create a SpeculativeScheduler from the `scheduler` config section.

    Args:
        config: Scheduler configuration (defaults if None)
        detokenize: Renders accepted tokens to text

    Returns:
        Configured SpeculativeScheduler instance
    """
    config = config or {}
    return SpeculativeScheduler(
        min_lookahead=config.get("min_lookahead", MIN_LOOKAHEAD),
        max_lookahead=config.get("max_lookahead", MAX_LOOKAHEAD),
        initial_lookahead=config.get("initial_lookahead", INITIAL_LOOKAHEAD),
        tau=config.get("tau", CONFIDENCE_THRESHOLD),
        max_output_chars=config.get("max_output_chars", 2000),
        max_tokens=config.get("max_tokens"),
        draft_timeout=config.get("draft_timeout"),
        verify_timeout=config.get("verify_timeout"),
        max_consecutive_timeouts=config.get("max_consecutive_timeouts", 3),
        controller=config.get("controller", "confidence"),
        detokenize=detokenize,
    )
