"""
Hugging Face Backends

Implements the tokenizer, draft, verify and model-load capabilities on top of
Hugging Face causal language models. Intended for small local models; the
blocking model calls run in worker threads so the event loop stays free.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Sequence

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer

from ..tiers.types import Tier
from .interfaces import (
    DraftModel,
    DraftResult,
    ModelLoader,
    TokenSequence,
    Tokenizer,
    Verifier,
    VerifyResult,
)

logger = logging.getLogger(__name__)


def select_device(device: str = "auto") -> str:
    """Select the best available device."""
    if device == "auto":
        if torch.backends.mps.is_available():
            return "mps"
        elif torch.cuda.is_available():
            return "cuda"
        else:
            return "cpu"
    return device


class HFTokenizer(Tokenizer):
    """Tokenizer backed by AutoTokenizer."""

    def __init__(self, model_name: str):
        self.model_name = model_name
        self._tokenizer = AutoTokenizer.from_pretrained(model_name)
        if self._tokenizer.pad_token is None:
            self._tokenizer.pad_token = self._tokenizer.eos_token

    @property
    def eos_token_id(self) -> Optional[int]:
        return self._tokenizer.eos_token_id

    def encode(self, text: str) -> TokenSequence:
        return list(self._tokenizer.encode(text, add_special_tokens=False))

    def decode(self, token_ids: Sequence[int]) -> str:
        return self._tokenizer.decode(list(token_ids), skip_special_tokens=True)


class HFCausalLM:
    """Lazily loaded causal LM."""

    def __init__(self, model_name: str, device: str = "auto"):
        self.model_name = model_name
        self.device = select_device(device)
        self.dtype = torch.float16 if self.device in ("cuda", "mps") else torch.float32
        self.model: Any = None

    @property
    def is_loaded(self) -> bool:
        return self.model is not None

    def load(self) -> None:
        if self.model is not None:
            return
        logger.info(f"Loading HF model: {self.model_name}")
        model = AutoModelForCausalLM.from_pretrained(
            self.model_name,
            torch_dtype=self.dtype,
            low_cpu_mem_usage=True,
        )
        self.model = model.to(self.device).eval()
        logger.info(f"HF model loaded on device: {self.device}")

    def _require_model(self) -> Any:
        if self.model is None:
            raise RuntimeError(f"Model {self.model_name} is not loaded")
        return self.model


class HFDraftModel(DraftModel):
    """Greedy drafter; confidence is the mean top-token probability."""

    def __init__(self, lm: HFCausalLM, pad_token_id: Optional[int] = None):
        self.lm = lm
        self.pad_token_id = pad_token_id

    async def draft(self, context: Sequence[int], count: int) -> DraftResult:
        return await asyncio.to_thread(self._draft, list(context), count)

    def _draft(self, context: TokenSequence, count: int) -> DraftResult:
        model = self.lm._require_model()
        input_ids = torch.tensor([context], dtype=torch.long, device=self.lm.device)
        with torch.no_grad():
            outputs = model.generate(
                input_ids,
                max_new_tokens=count,
                do_sample=False,
                output_scores=True,
                return_dict_in_generate=True,
                pad_token_id=self.pad_token_id,
            )
        tokens = outputs.sequences[0, input_ids.shape[1] :].tolist()
        if not outputs.scores:
            return DraftResult(tokens=tokens, confidence=0.0)

        top_probs = [
            torch.softmax(step_scores[0].float(), dim=-1).max().item()
            for step_scores in outputs.scores
        ]
        return DraftResult(tokens=tokens, confidence=sum(top_probs) / len(top_probs))


class HFVerifier(Verifier):
    """Exact-match verifier: accept while drafts equal the greedy continuation."""

    def __init__(self, lm: HFCausalLM, eos_token_id: Optional[int] = None):
        self.lm = lm
        self.eos_token_id = eos_token_id

    async def verify(
        self, context: Sequence[int], candidates: Sequence[int]
    ) -> VerifyResult:
        return await asyncio.to_thread(self._verify, list(context), list(candidates))

    def _verify(
        self, context: TokenSequence, candidates: TokenSequence
    ) -> VerifyResult:
        if not candidates or not context:
            return VerifyResult(accepted=[], is_final=False)

        model = self.lm._require_model()
        input_ids = torch.tensor(
            [context + candidates], dtype=torch.long, device=self.lm.device
        )
        with torch.no_grad():
            logits = model(input_ids).logits
        # Logits at position i predict token i + 1.
        start = len(context) - 1
        predicted = logits[0, start : start + len(candidates)].argmax(dim=-1).tolist()

        accepted = []
        is_final = False
        for drafted, expected in zip(candidates, predicted):
            if drafted != expected:
                break
            accepted.append(drafted)
            if self.eos_token_id is not None and drafted == self.eos_token_id:
                is_final = True
                break
        return VerifyResult(accepted=accepted, is_final=is_final)


class HFModelLoader(ModelLoader):
    """Loads the HF model backing each tier in a worker thread."""

    def __init__(self, models: Dict[Tier, HFCausalLM]):
        self.models = models

    async def load(self, tier: Tier) -> bool:
        lm = self.models.get(tier)
        if lm is None:
            logger.error(f"No model configured for {tier.value} tier")
            return False
        await asyncio.to_thread(lm.load)
        return True


def create_hf_backends(tiers_config: Dict[str, Any], device: str = "auto"):
    """
    Create tokenizer, loader, drafter and verifiers for Hugging Face models.

    Scout drafts for every tier; each tier verifies with its own model. The
    tokenizer is taken from the Scout model and must be shared by both tiers.

    Args:
        tiers_config: `tiers` config section with scout_model / sovereign_model
        device: Device to run on

    Returns:
        Tuple of (tokenizer, loader, draft_model, {tier: verifier})
    """
    tokenizer = HFTokenizer(tiers_config["scout_model"])
    models = {
        Tier.SCOUT: HFCausalLM(tiers_config["scout_model"], device=device),
        Tier.SOVEREIGN: HFCausalLM(tiers_config["sovereign_model"], device=device),
    }
    draft_model = HFDraftModel(
        models[Tier.SCOUT], pad_token_id=tokenizer.eos_token_id
    )
    verifiers = {
        tier: HFVerifier(lm, eos_token_id=tokenizer.eos_token_id)
        for tier, lm in models.items()
    }
    return tokenizer, HFModelLoader(models), draft_model, verifiers
