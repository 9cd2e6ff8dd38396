"""
Speculative Decoding Package

Capability interfaces for the draft and verify backends, lookahead controllers
and the fake backends used for testing. Hugging Face backends live in
`hf_wrappers` and are imported on demand.

Key Components:
- interfaces: Tokenizer, DraftModel, Verifier, ModelLoader, HistorySearch
- controllers: Lookahead (K) adaptation policies
- fake_lm: Deterministic fake backends
"""

from .controllers import (
    ConfidenceKController,
    FixedKController,
    KController,
    create_controller,
    next_lookahead,
)
from .fake_lm import FakeDraftModel, FakeModelLoader, FakeTokenizer, FakeVerifier
from .interfaces import (
    DraftModel,
    DraftResult,
    HistorySearch,
    ModelLoader,
    Tokenizer,
    Verifier,
    VerifyResult,
)

__all__ = [
    "KController",
    "FixedKController",
    "ConfidenceKController",
    "create_controller",
    "next_lookahead",
    "DraftModel",
    "DraftResult",
    "Verifier",
    "VerifyResult",
    "Tokenizer",
    "ModelLoader",
    "HistorySearch",
    "FakeTokenizer",
    "FakeDraftModel",
    "FakeVerifier",
    "FakeModelLoader",
]
