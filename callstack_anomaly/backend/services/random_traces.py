"""Utilities to generate synthetic call-tree traces for quick exploration."""

from __future__ import annotations

import random
from typing import Dict, List, Optional

ENTRY_ADDRESS = 0x1000
DISPATCH_ADDRESS = 0x1100
HANDLER_ADDRESSES = [0x2000, 0x2100, 0x2200]
STEP_ADDRESSES = [0x3000, 0x3100, 0x3200, 0x3300, 0x3400]
LEAF_ADDRESSES = [0x4000, 0x4100, 0x4200]


def _build_step(rng: random.Random, address: int, start: int, *, slow: bool) -> Dict:
    duration = rng.randint(20, 60)
    if slow:
        duration *= rng.randint(8, 15)
    children = []
    if rng.random() < 0.6:
        leaf_duration = max(1, duration - rng.randint(5, 15))
        children.append(
            {
                "address": rng.choice(LEAF_ADDRESSES),
                "start": start + 2,
                "duration": min(leaf_duration, duration - 2),
            },
        )
    return {"address": address, "start": start, "duration": duration, "children": children}


def _build_handler(rng: random.Random, start: int, *, outlier: bool) -> Dict:
    address = rng.choice(HANDLER_ADDRESSES)
    steps = sorted(rng.sample(STEP_ADDRESSES, k=rng.randint(2, 4)))
    if outlier:
        # slow repeated work is what the detectors should single out
        steps.append(steps[-1])
    slow_index = rng.randrange(len(steps)) if outlier else -1

    children = []
    cursor = start + rng.randint(1, 5)
    for index, step in enumerate(steps):
        node = _build_step(rng, step, cursor, slow=index == slow_index)
        children.append(node)
        cursor += node["duration"] + rng.randint(1, 5)
    return {"address": address, "start": start, "end": cursor + 1, "children": children}


def generate_random_trace(
    *,
    num_requests: int = 40,
    outlier_ratio: float = 0.1,
    seed: Optional[int] = None,
    name: str = "random",
) -> Dict:
    """Create a synthetic trace whose handler calls sit at depth 3."""

    rng = random.Random(seed)
    handlers: List[Dict] = []
    cursor = 100
    total = max(1, num_requests)
    outliers = set(rng.sample(range(total), k=max(1, int(total * outlier_ratio))))
    for index in range(total):
        handler = _build_handler(rng, cursor, outlier=index in outliers)
        handlers.append(handler)
        cursor = handler["end"] + rng.randint(10, 50)

    dispatch = {"address": DISPATCH_ADDRESS, "start": 50, "end": cursor, "children": handlers}
    return {
        "name": name,
        "calls": [{"address": ENTRY_ADDRESS, "start": 0, "end": cursor + 50, "children": [dispatch]}],
    }
