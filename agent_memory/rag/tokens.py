"""Token estimation for budgeting the retrieved context."""

import math
from typing import Protocol

# Rough estimate: 1 token ~= 4 characters for English text
CHARS_PER_TOKEN = 4


class TokenEstimator(Protocol):
    def __call__(self, text: str) -> int: ...


def estimate_tokens(text: str) -> int:
    """Approximate token count. Subadditive: est(a + b) <= est(a) + est(b)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)
