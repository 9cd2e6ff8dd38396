"""
Shared fixtures for the inference core tests.
"""

import pytest

from minima_brain.specdec.fake_lm import FakeTokenizer


class CountingTokenizer(FakeTokenizer):
    """Byte tokenizer that records how often it is asked to encode."""

    def __init__(self):
        self.encode_calls = 0

    def encode(self, text):
        self.encode_calls += 1
        return super().encode(text)


@pytest.fixture
def tokenizer():
    return FakeTokenizer()


@pytest.fixture
def counting_tokenizer():
    return CountingTokenizer()
