"""Plausibility checks for model output.

These are syntactic filters only: they catch empty replies, escaped control
sequences, phrases the model is known to inject, and outputs whose length or
noise level is far from the source. They say nothing about whether a
translation is correct.
"""

from __future__ import annotations

import re

SUSPICIOUS_TOKENS = ("千岁", "千景", "张三")

MIN_LENGTH_RATIO = 0.15
MAX_LENGTH_RATIO = 3.5
MAX_NOISE_FACTOR = 3

ESCAPED_ENTITY = re.compile(r"%\d+;")
NOT_CONTENT = re.compile(r"[^a-zA-Z0-9\u3040-\u309F\u30A0-\u30FF\u4E00-\u9FFF]")
REASONING_BLOCK = re.compile(
    r"<(think|thinking)>.*?</\1>", re.DOTALL | re.IGNORECASE
)


def strip_reasoning(text: str) -> str:
    """Remove chain-of-thought blocks some models emit before the answer."""

    if not text:
        return text
    return REASONING_BLOCK.sub("", text)


def is_hallucination(candidate: str | None, source: str) -> bool:
    """Return True when candidate must be rejected as a translation of source."""

    if candidate is None or not candidate.strip():
        return True

    if "\\n" in candidate or ESCAPED_ENTITY.search(candidate):
        return True

    for token in SUSPICIOUS_TOKENS:
        if token in candidate and token not in source:
            return True

    kept_candidate = NOT_CONTENT.sub("", candidate)
    kept_source = NOT_CONTENT.sub("", source)
    if not kept_source:
        return False

    ratio = len(kept_candidate) / len(kept_source)
    if ratio > MAX_LENGTH_RATIO or ratio < MIN_LENGTH_RATIO:
        return True

    removed = len(candidate) - len(kept_candidate)
    return removed > MAX_NOISE_FACTOR * len(kept_candidate)
