"""
Lookahead Controllers for Speculative Decoding

This module implements strategies for controlling the number of draft tokens
(the lookahead, K) generated per round of speculative decoding.

The default confidence controller expands multiplicatively while the draft
model is reliably right and contracts to just past the last accepted position
on any rejection.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from ..errors import ConfigError

logger = logging.getLogger(__name__)

MIN_LOOKAHEAD = 1
MAX_LOOKAHEAD = 32
INITIAL_LOOKAHEAD = 5
CONFIDENCE_THRESHOLD = 0.95


def next_lookahead(
    lookahead: int,
    drafted: int,
    accepted: int,
    confidence: float,
    min_k: int = MIN_LOOKAHEAD,
    max_k: int = MAX_LOOKAHEAD,
    tau: float = CONFIDENCE_THRESHOLD,
) -> int:
    """
    Compute the lookahead for the next round.

    Args:
        lookahead: Lookahead used for the round just finished
        drafted: Number of tokens drafted this round
        accepted: Number of drafted tokens the verifier accepted
        confidence: Draft model's confidence for this round
        min_k: Lower bound on the lookahead
        max_k: Upper bound on the lookahead
        tau: Confidence above which a fully accepted round doubles the lookahead

    Returns:
        Next lookahead in [min_k, max_k]
    """
    if accepted < drafted:
        return max(min_k, accepted + 1)
    if drafted > 0 and confidence > tau:
        return min(lookahead * 2, max_k)
    return lookahead


class KController(ABC):
    """Abstract base class for lookahead controllers."""

    @abstractmethod
    def get_k(self) -> int:
        """Number of draft tokens to request for the next round."""
        pass

    @abstractmethod
    def update(self, drafted: int, accepted: int, confidence: float) -> int:
        """
        Feed back the outcome of a round.

        Args:
            drafted: Number of tokens drafted
            accepted: Number of tokens accepted by the verifier
            confidence: Draft model's confidence for the round

        Returns:
            Lookahead for the next round
        """
        pass

    @abstractmethod
    def get_info(self) -> Dict[str, Any]:
        """Get controller information for logging."""
        pass


class FixedKController(KController):
    """Fixed controller that always drafts the same number of tokens."""

    def __init__(self, k: int = INITIAL_LOOKAHEAD):
        if k < 1:
            raise ConfigError(f"k must be >= 1, got {k}")
        self.k = k
        self.name = "fixed"

    def get_k(self) -> int:
        return self.k

    def update(self, drafted: int, accepted: int, confidence: float) -> int:
        return self.k

    def get_info(self) -> Dict[str, Any]:
        return {
            "controller": self.name,
            "k": self.k,
        }


class ConfidenceKController(KController):
    """Confidence-driven controller: multiplicative increase, reset on rejection."""

    def __init__(
        self,
        initial_k: int = INITIAL_LOOKAHEAD,
        min_k: int = MIN_LOOKAHEAD,
        max_k: int = MAX_LOOKAHEAD,
        tau: float = CONFIDENCE_THRESHOLD,
    ):
        """
        Initialize confidence controller.

        Args:
            initial_k: Lookahead for the first round
            min_k: Minimum lookahead
            max_k: Maximum lookahead
            tau: Confidence threshold for expansion
        """
        if not 1 <= min_k <= initial_k <= max_k:
            raise ConfigError(
                f"Expected 1 <= min_k <= initial_k <= max_k, "
                f"got min_k={min_k}, initial_k={initial_k}, max_k={max_k}"
            )
        if not 0.0 <= tau <= 1.0:
            raise ConfigError(f"tau must be in [0, 1], got {tau}")

        self.initial_k = initial_k
        self.min_k = min_k
        self.max_k = max_k
        self.tau = tau
        self.name = "confidence"

        self.current_k = initial_k
        self.k_history: List[int] = [initial_k]

    def get_k(self) -> int:
        return self.current_k

    def update(self, drafted: int, accepted: int, confidence: float) -> int:
        self.current_k = next_lookahead(
            self.current_k,
            drafted,
            accepted,
            confidence,
            min_k=self.min_k,
            max_k=self.max_k,
            tau=self.tau,
        )
        self.k_history.append(self.current_k)
        return self.current_k

    def get_info(self) -> Dict[str, Any]:
        return {
            "controller": self.name,
            "current_k": self.current_k,
            "min_k": self.min_k,
            "max_k": self.max_k,
            "tau": self.tau,
        }


def create_controller(controller_type: str, **kwargs: Any) -> KController:
    """
    Create a lookahead controller by type.

    Args:
        controller_type: Type of controller to create
        **kwargs: Controller-specific parameters

    Returns:
        KController instance

    Raises:
        ValueError: If controller_type is not recognized
    """
    if controller_type == "fixed":
        return FixedKController(kwargs.get("k", INITIAL_LOOKAHEAD))
    elif controller_type == "confidence":
        return ConfidenceKController(
            initial_k=kwargs.get("initial_k", INITIAL_LOOKAHEAD),
            min_k=kwargs.get("min_k", MIN_LOOKAHEAD),
            max_k=kwargs.get("max_k", MAX_LOOKAHEAD),
            tau=kwargs.get("tau", CONFIDENCE_THRESHOLD),
        )
    else:
        raise ValueError(
            f"Unknown controller: {controller_type}. "
            f"Available: ['fixed', 'confidence']"
        )
