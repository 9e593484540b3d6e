"""Dataset-wide vector layout inferred from every root call before encoding."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Tuple

from callstack_anomaly.db.call_tree import CallNode, walk


@dataclass(frozen=True)
class ShapeLayout:
    """Sizing information shared by every vector of one dataset.

    ``max_depth`` is the deepest level found below any root call (children of
    the root are level 1). ``max_occurrences`` maps each address to the
    largest number of times one root call invokes it at a single level.
    """

    max_depth: int
    max_occurrences: Mapping[int, int]

    @property
    def addresses(self) -> Tuple[int, ...]:
        return tuple(sorted(self.max_occurrences))

    @property
    def row_width(self) -> int:
        return sum(self.max_occurrences.values())

    @property
    def vector_size(self) -> int:
        return 2 * self.max_depth * self.row_width


@dataclass
class _ShapeContext:
    """Accumulators owned by one :func:`collect_shape` pass."""

    max_depth: int = 0
    maximums: Dict[int, int] = field(default_factory=dict)

    def add_tree(self, root: CallNode) -> None:
        counts: Dict[Tuple[int, int], int] = defaultdict(int)
        for node, level in walk(root):
            if level == 0:
                continue
            counts[(node.address, level)] += 1
            if level > self.max_depth:
                self.max_depth = level

        per_address: Dict[int, int] = {}
        for (address, _level), count in counts.items():
            if count > per_address.get(address, 0):
                per_address[address] = count

        for address, count in per_address.items():
            if count > self.maximums.get(address, 0):
                self.maximums[address] = count


def collect_shape(root_calls: Iterable[CallNode]) -> ShapeLayout:
    """Single pass over all root calls computing the global :class:`ShapeLayout`.

    Per root call the occurrence counts of each address are collapsed across
    levels (an address gets one column block wide enough for its busiest
    level), then merged across root calls by keeping the larger count.
    """
    context = _ShapeContext()
    for root in root_calls:
        context.add_tree(root)
    return ShapeLayout(
        max_depth=context.max_depth,
        max_occurrences=dict(sorted(context.maximums.items())),
    )
