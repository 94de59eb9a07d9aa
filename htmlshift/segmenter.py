"""Batch planning and batch-response splitting for the degrade cascade."""

from __future__ import annotations

import re
from typing import List, Sequence

from .structures import Batch

BATCH_SIZE = 10
SUB_BATCH_SIZES = (3, 3, 4)

PRIMARY_TAG = "B10"
SUB_BATCH_TAG = "B334"
SINGLE_TAG = "S1"

LINE_BREAK_WITH_PADDING = re.compile(r"\s*\r?\n\s*")


def plan_batches(unit_count: int, batch_size: int = BATCH_SIZE) -> List[Batch]:
    """Cut unit indices into contiguous primary batches; the last may be short."""

    size = max(1, batch_size)
    return [
        Batch(start=start, length=min(size, unit_count - start), tag=PRIMARY_TAG)
        for start in range(0, unit_count, size)
    ]


def split_sub_batches(batch: Batch) -> List[Batch]:
    """Split a rejected full batch into 3/3/4 sub-batches.

    Only a batch of exactly ``BATCH_SIZE`` units is split; anything shorter
    goes straight to unit-by-unit translation, signalled by an empty list.
    """

    if batch.length != sum(SUB_BATCH_SIZES):
        return []
    batches: List[Batch] = []
    start = batch.start
    for size in SUB_BATCH_SIZES:
        batches.append(Batch(start=start, length=size, tag=SUB_BATCH_TAG))
        start += size
    return batches


def join_batch(lines: Sequence[str]) -> str:
    """Build the request payload for a batch: one unit per line."""

    return "\n".join(lines)


def split_batch_response(raw: str) -> List[str]:
    """Split a batch reply into lines, ignoring padding around line breaks."""

    collapsed = LINE_BREAK_WITH_PADDING.sub("\n", raw).strip()
    return collapsed.split("\n")
