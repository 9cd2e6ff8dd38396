"""
Fake Backends for Testing

Provides deterministic stand-ins for the tokenizer, draft model, verifier and
model loader so the control core can be exercised without loading real
models.

The fake draft model and verifier share a canned reply. The verifier treats
the reply as ground truth; the draft model proposes it with a configurable
per-token accuracy, so rejections happen at reproducible positions.
"""

import asyncio
import logging
import random
from typing import Dict, Iterable, List, Optional, Sequence

from ..tiers.types import Tier
from .interfaces import (
    DraftModel,
    DraftResult,
    ModelLoader,
    Token,
    TokenSequence,
    Tokenizer,
    Verifier,
    VerifyResult,
)

logger = logging.getLogger(__name__)

DEFAULT_REPLY = "This is a high-speed response from the on-device model."


class FakeTokenizer(Tokenizer):
    """Byte-level tokenizer: every UTF-8 byte is one token."""

    PAD_TOKEN_ID = 0
    EOS_TOKEN_ID = 1
    BOS_TOKEN_ID = 2
    UNK_TOKEN_ID = 3
    OFFSET = 4

    @property
    def vocab_size(self) -> int:
        return 256 + self.OFFSET

    def encode(self, text: str) -> TokenSequence:
        return [b + self.OFFSET for b in text.encode("utf-8")]

    def decode(self, token_ids: Sequence[int]) -> str:
        data = bytes(t - self.OFFSET for t in token_ids if t >= self.OFFSET)
        return data.decode("utf-8", errors="replace")


def reply_position(context: Sequence[Token], reply: Sequence[Token]) -> int:
    """
    Number of reply tokens already present at the end of `context`.

    Finds the longest suffix of the context that is also a prefix of the reply.
    """
    limit = min(len(context), len(reply))
    for k in range(limit, 0, -1):
        if list(context[-k:]) == list(reply[:k]):
            return k
    return 0


class FakeDraftModel(DraftModel):
    """Draft model that proposes the canned reply with seeded errors."""

    def __init__(
        self,
        reply: Sequence[Token],
        accuracy: float = 0.9,
        seed: Optional[int] = None,
        latency: float = 0.0,
        wrong_token: Token = 3,
    ):
        """
        Initialize the fake draft model.

        Args:
            reply: Canned reply tokens shared with the verifier
            accuracy: Probability that each drafted token is correct
            seed: Random seed for reproducible errors
            latency: Simulated seconds per draft call
            wrong_token: Token substituted at error positions
        """
        self.reply = list(reply)
        self.accuracy = accuracy
        self.latency = latency
        self.wrong_token = wrong_token
        self._rng = random.Random(seed)
        self.calls = 0

    async def draft(self, context: Sequence[Token], count: int) -> DraftResult:
        self.calls += 1
        if self.latency:
            await asyncio.sleep(self.latency)

        start = reply_position(context, self.reply)
        tokens = list(self.reply[start : start + count])
        for i in range(len(tokens)):
            if self._rng.random() >= self.accuracy:
                tokens[i] = self.wrong_token
                # Everything after a wrong token is off the reply too.
                tokens = tokens[: i + 1]
                break

        jitter = self._rng.uniform(-0.02, 0.02)
        confidence = min(max(self.accuracy + jitter, 0.0), 1.0)
        return DraftResult(tokens=tokens, confidence=confidence)


class FakeVerifier(Verifier):
    """Verifier that accepts the longest prefix matching the canned reply."""

    def __init__(
        self,
        reply: Sequence[Token],
        latency: float = 0.0,
        name: str = "fake-verifier",
    ):
        self.reply = list(reply)
        self.latency = latency
        self.name = name
        self.calls = 0

    async def verify(
        self, context: Sequence[Token], candidates: Sequence[Token]
    ) -> VerifyResult:
        self.calls += 1
        if self.latency:
            await asyncio.sleep(self.latency)

        start = reply_position(context, self.reply)
        expected = self.reply[start:]
        accepted: List[Token] = []
        for drafted, truth in zip(candidates, expected):
            if drafted != truth:
                break
            accepted.append(drafted)

        is_final = start + len(accepted) >= len(self.reply)
        return VerifyResult(accepted=accepted, is_final=is_final)


class FakeModelLoader(ModelLoader):
    """Loader that sleeps instead of loading weights."""

    def __init__(
        self,
        delays: Optional[Dict[Tier, float]] = None,
        failing: Iterable[Tier] = (),
    ):
        """
        Initialize the fake loader.

        Args:
            delays: Simulated load time per tier in seconds
            failing: Tiers whose loads report failure
        """
        self.delays = delays or {}
        self.failing = set(failing)
        self.calls: Dict[Tier, int] = {tier: 0 for tier in Tier}

    async def load(self, tier: Tier) -> bool:
        self.calls[tier] += 1
        await asyncio.sleep(self.delays.get(tier, 0.0))
        if tier in self.failing:
            logger.warning(f"Fake load of {tier.value} failing as configured")
            return False
        return True


def create_fake_backends(
    tokenizer: Tokenizer,
    reply_text: str = DEFAULT_REPLY,
    accuracy: float = 0.9,
    seed: Optional[int] = None,
    draft_latency: float = 0.0,
    verify_latency: float = 0.0,
):
    """
    Create a fake draft model plus one verifier per tier.

    Args:
        tokenizer: Tokenizer used to encode the canned reply
        reply_text: Reply both fake models agree on
        accuracy: Draft accuracy per token
        seed: Random seed for reproducible drafts
        draft_latency: Simulated seconds per draft call
        verify_latency: Simulated seconds per verify call

    Returns:
        Tuple of (draft_model, {tier: verifier})
    """
    reply = tokenizer.encode(reply_text)
    draft_model = FakeDraftModel(
        reply, accuracy=accuracy, seed=seed, latency=draft_latency
    )
    verifiers = {
        tier: FakeVerifier(reply, latency=verify_latency, name=f"fake-{tier.value}")
        for tier in Tier
    }
    return draft_model, verifiers
