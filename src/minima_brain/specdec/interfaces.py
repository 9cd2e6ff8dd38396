"""
Capability Interfaces for the Inference Core

Defines the collaborators the core calls into (tokenizer, draft and verify
backends, model loading, history search) so that real Hugging Face models and
fake models for testing can be injected interchangeably.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Sequence, Union

from ..tiers.types import Tier

Token = Union[int, str]
TokenSequence = List[int]


@dataclass
class DraftResult:
    """Speculative tokens proposed by the fast path."""

    tokens: List[Token] = field(default_factory=list)
    confidence: float = 0.0


@dataclass
class VerifyResult:
    """Prefix of the draft confirmed by the accurate path."""

    accepted: List[Token] = field(default_factory=list)
    is_final: bool = False


class Tokenizer(ABC):
    """Deterministic, side-effect free text <-> token id conversion."""

    @abstractmethod
    def encode(self, text: str) -> TokenSequence:
        """
        Encode text to token IDs.

        Args:
            text: Input text to encode

        Returns:
            List of token IDs
        """
        pass

    @abstractmethod
    def decode(self, token_ids: Sequence[int]) -> str:
        """
        Decode token IDs to text.

        Args:
            token_ids: Token IDs to decode

        Returns:
            Decoded text
        """
        pass


class DraftModel(ABC):
    """Fast-path capability that proposes speculative tokens."""

    @abstractmethod
    async def draft(self, context: Sequence[Token], count: int) -> DraftResult:
        """
        Propose up to `count` tokens continuing `context`.

        Args:
            context: Prompt plus tokens accepted so far
            count: Number of tokens to speculate (the current lookahead)

        Returns:
            DraftResult with the proposed tokens and a confidence in [0, 1]
            (mean acceptance-probability estimate)
        """
        pass


class Verifier(ABC):
    """Accurate-path capability that confirms a prefix of a draft."""

    @abstractmethod
    async def verify(
        self, context: Sequence[Token], candidates: Sequence[Token]
    ) -> VerifyResult:
        """
        Check drafted tokens against the accurate model.

        Args:
            context: Prompt plus tokens accepted so far
            candidates: Drafted tokens to check

        Returns:
            VerifyResult whose `accepted` is a prefix of `candidates` and whose
            `is_final` flag signals the end of generation
        """
        pass


class ModelLoader(ABC):
    """Long-running load of a model tier into memory."""

    @abstractmethod
    async def load(self, tier: Tier) -> bool:
        """Load `tier`; return False (or raise) on failure."""
        pass


class HistorySearch(ABC):
    """Search over stored conversation history."""

    @abstractmethod
    async def search(self, query: str) -> List[str]:
        """Return formatted historical turns relevant to `query`, best first."""
        pass
