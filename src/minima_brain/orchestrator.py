"""
Per-Turn Inference Orchestration

Owns one instance of each control component and runs a user turn through
them:

1. TierSelector picks the tier (never waiting on a Sovereign load)
2. PrefixCache supplies the tokenized system prompt
3. ContextWindow supplies recent tokens plus retrieved history snippets
4. SpeculativeScheduler drafts with Scout and verifies with the chosen tier
5. ContextWindow records the turn, compressing once it exceeds its token limit

Components are constructed once at startup and injected here; nothing in the
core is a process-wide singleton.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .cache import FileStore, MemoryStore, PrefixCache
from .context import ContextWindow, InMemoryHistory
from .errors import ConfigError
from .scheduler import (
    GenerationResult,
    SpeculativeScheduler,
    create_speculative_scheduler,
)
from .scheduler.speculative_scheduler import TokenCallback
from .specdec.fake_lm import FakeModelLoader, FakeTokenizer, create_fake_backends
from .specdec.interfaces import DraftModel, Tokenizer, Verifier
from .tiers import ThermalState, Tier, TierSelector

logger = logging.getLogger(__name__)

USER_TEMPLATE = "User: {text}\nAssistant: "


@dataclass
class TurnResult:
    """Outcome of one user turn."""

    tier: Tier
    generation: GenerationResult
    prefix_cache_hit: bool
    retrieved_snippets: List[str]
    context_tokens: int
    has_summary: bool

    @property
    def text(self) -> str:
        return self.generation.text

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.generation.to_dict(),
            "tier": self.tier.value,
            "prefix_cache_hit": self.prefix_cache_hit,
            "retrieved_snippets": list(self.retrieved_snippets),
            "context_tokens": self.context_tokens,
            "has_summary": self.has_summary,
        }


class InferenceOrchestrator:
    """Runs user turns through tier selection, caching, context and decoding."""

    def __init__(
        self,
        tokenizer: Tokenizer,
        draft_model: DraftModel,
        verifiers: Dict[Tier, Verifier],
        prefix_cache: PrefixCache,
        context_window: ContextWindow,
        tier_selector: TierSelector,
        scheduler: SpeculativeScheduler,
        history: Optional[InMemoryHistory] = None,
        system_prompt: Optional[str] = None,
    ):
        missing = [tier.value for tier in Tier if tier not in verifiers]
        if missing:
            raise ConfigError(f"No verifier configured for tiers: {missing}")

        self.tokenizer = tokenizer
        self.draft_model = draft_model
        self.verifiers = verifiers
        self.prefix_cache = prefix_cache
        self.context_window = context_window
        self.tier_selector = tier_selector
        self.scheduler = scheduler
        self.history = history
        self.system_prompt = system_prompt

    async def start(self) -> None:
        """Kick off Scout loading and system prompt caching without waiting."""
        self.tier_selector.warm_up()
        if self.system_prompt:
            self.prefix_cache.warm_up(self.system_prompt, self.tokenizer.encode)

    async def run_turn(
        self,
        prompt_text: str,
        entitled: bool = False,
        thermal: ThermalState = ThermalState.NOMINAL,
        cancel_event: Optional[asyncio.Event] = None,
        on_tokens: Optional[TokenCallback] = None,
    ) -> TurnResult:
        """
        Generate a reply to one user turn.

        Args:
            prompt_text: The user's message
            entitled: Whether the user may use the Sovereign tier
            thermal: Current device thermal state
            cancel_event: When set, generation stops and returns partial output
            on_tokens: Receives accepted token chunks as they are produced

        Returns:
            TurnResult with the reply and per-turn diagnostics

        Raises:
            LoadFailure: If the Scout tier cannot be loaded
        """
        tier = self.tier_selector.select_for_thermal(entitled, thermal)

        # Scout drafts for every tier, so it must be resident.
        await self.tier_selector.warm_up()

        prefix, cache_hit = await self._system_prompt_tokens()
        snapshot = await self.context_window.get_context(query=prompt_text)

        context: List[int] = list(prefix)
        if snapshot.retrieved_snippets:
            context.extend(
                self.tokenizer.encode("\n".join(snapshot.retrieved_snippets) + "\n")
            )
        context.extend(snapshot.recent_tokens)
        turn_tokens = self.tokenizer.encode(USER_TEMPLATE.format(text=prompt_text))
        context.extend(turn_tokens)

        logger.info(
            f"Turn on {tier.value}: {len(context)} context tokens "
            f"(prefix={len(prefix)}, recent={len(snapshot.recent_tokens)}, "
            f"snippets={len(snapshot.retrieved_snippets)})"
        )

        generation = await self.scheduler.generate(
            context,
            self.draft_model,
            self.verifiers[tier],
            cancel_event=cancel_event,
            on_tokens=on_tokens,
        )

        self.context_window.append(
            turn_tokens + self.tokenizer.encode(generation.text + "\n")
        )
        if self.history is not None:
            self.history.add_message("user", prompt_text)
            self.history.add_message(
                "assistant", generation.text, tokens_used=len(generation.tokens)
            )

        return TurnResult(
            tier=tier,
            generation=generation,
            prefix_cache_hit=cache_hit,
            retrieved_snippets=snapshot.retrieved_snippets,
            context_tokens=len(self.context_window),
            has_summary=self.context_window.has_summary,
        )

    async def _system_prompt_tokens(self):
        if not self.system_prompt:
            return [], False

        tokens = self.prefix_cache.get_cached_tokens()
        if tokens is not None:
            return tokens, True

        await self.prefix_cache.warm_up(self.system_prompt, self.tokenizer.encode)
        tokens = self.prefix_cache.get_cached_tokens()
        if tokens is None:
            logger.warning("Prefix cache unavailable, tokenizing system prompt inline")
            tokens = self.tokenizer.encode(self.system_prompt)
        return tokens, False

    def new_conversation(self) -> None:
        """Forget the rolling context; stored history is kept."""
        self.context_window.clear()

    def get_status(self) -> Dict[str, Any]:
        return {
            "tiers": self.tier_selector.get_status(),
            "prefix_cache": self.prefix_cache.get_stats(),
            "context": self.context_window.get_stats(),
            "scheduler": self.scheduler.get_metrics(),
        }


def build_orchestrator(config: Dict[str, Any]) -> InferenceOrchestrator:
    """
    Construct the full component graph from configuration.

    Args:
        config: Configuration as returned by load_config

    Returns:
        InferenceOrchestrator ready for start()
    """
    implementation = config.get("implementation", "fake")
    tiers_config = config["tiers"]

    if implementation == "fake":
        fake_config = config["fake"]
        tokenizer = FakeTokenizer()
        draft_model, verifiers = create_fake_backends(
            tokenizer,
            reply_text=fake_config["reply"],
            accuracy=fake_config["accuracy"],
            seed=config.get("seed"),
            draft_latency=fake_config["draft_latency"],
            verify_latency=fake_config["verify_latency"],
        )
        loader = FakeModelLoader(
            delays={
                Tier.SCOUT: fake_config["scout_load_delay"],
                Tier.SOVEREIGN: fake_config["sovereign_load_delay"],
            }
        )
    elif implementation == "hf":
        from .specdec.hf_wrappers import create_hf_backends

        tokenizer, loader, draft_model, verifiers = create_hf_backends(
            tiers_config, device=config.get("device", "auto")
        )
    else:
        raise ConfigError(
            f"Unknown implementation: {implementation}. Available: ['fake', 'hf']"
        )

    cache_path = config["prefix_cache"].get("path")
    store = FileStore(cache_path) if cache_path else MemoryStore()

    history = InMemoryHistory()
    context_config = config["context"]
    context_window = ContextWindow(
        max_context_tokens=context_config["max_context_tokens"],
        window_size=context_config["window_size"],
        compression_target=context_config["compression_target"],
        history_search=history,
        search_timeout=context_config["search_timeout"],
        max_snippets=context_config["max_snippets"],
    )

    tier_selector = TierSelector(
        loader,
        load_timeout=tiers_config.get("load_timeout"),
        min_available_memory_mb=tiers_config.get("min_available_memory_mb"),
    )
    scheduler = create_speculative_scheduler(
        config["scheduler"], detokenize=tokenizer.decode
    )

    return InferenceOrchestrator(
        tokenizer=tokenizer,
        draft_model=draft_model,
        verifiers=verifiers,
        prefix_cache=PrefixCache(store),
        context_window=context_window,
        tier_selector=tier_selector,
        scheduler=scheduler,
        history=history,
        system_prompt=config.get("system_prompt"),
    )
