"""Approximate token accounting for context budgets.

``estimate_tokens`` is a heuristic, not a tokenizer-accurate count: mixed
Chinese/English prose averages roughly two characters per token. Every budget
computation in the engine goes through this module (or a replacement with the
same ``Callable[[str], int]`` signature) so section ratios stay
self-consistent even though the absolute numbers are rough.
"""
from __future__ import annotations

from typing import Callable

CHARS_PER_TOKEN = 2

TokenEstimator = Callable[[str], int]


def estimate_tokens(text: str | None) -> int:
    if not text:
        return 0
    return len(text) // CHARS_PER_TOKEN


def chars_for_tokens(tokens: int) -> int:
    return max(int(tokens), 0) * CHARS_PER_TOKEN
