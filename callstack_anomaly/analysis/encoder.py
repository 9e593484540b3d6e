"""Encode one root call into a fixed-length vector sized by a :class:`ShapeLayout`.

The vector is a flattened ``max_depth x row_width`` grid of slot pairs. Row
``level - 1`` holds the calls found at that level below the root; inside a
row, addresses own contiguous column blocks in ascending address order, each
``max_occurrences[address]`` wide. The ``k``-th call to an address at a level
lands in column ``block_start + k`` and fills two values: its start offset
relative to the root call, then its self time.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, Iterator, Tuple

import numpy as np

from callstack_anomaly.analysis.shape import ShapeLayout
from callstack_anomaly.common.errors import ShapeMismatchError
from callstack_anomaly.db.arrays_store import EncodedVector
from callstack_anomaly.db.call_tree import CallNode, walk


class VectorEncoder:
    def __init__(self, layout: ShapeLayout) -> None:
        self.layout = layout
        self.row_width = layout.row_width
        self.vector_size = layout.vector_size
        self._block_start: Dict[int, int] = {}
        position = 0
        for address in layout.addresses:
            self._block_start[address] = position
            position += layout.max_occurrences[address]

    def slot(self, level: int, address: int, occurrence: int) -> int:
        """Index of the offset value for ``(level, address, occurrence)``.

        The self time is stored right after it.
        """
        if level < 1 or level > self.layout.max_depth:
            raise ShapeMismatchError(
                f"Call at level {level} is outside the layout depth {self.layout.max_depth}",
            )
        block = self._block_start.get(address)
        if block is None:
            raise ShapeMismatchError(f"Address {address:#x} is not part of the layout")
        width = self.layout.max_occurrences[address]
        if occurrence >= width:
            raise ShapeMismatchError(
                f"Occurrence {occurrence} of address {address:#x} at level {level} "
                f"exceeds the reserved width {width}",
            )
        return 2 * ((level - 1) * self.row_width + block + occurrence)

    def encode(self, root: CallNode) -> EncodedVector:
        values = np.zeros(self.vector_size, dtype=np.float64)
        occurrences: Dict[Tuple[int, int], int] = defaultdict(int)
        for node, level in walk(root):
            if level == 0:
                continue
            key = (level, node.address)
            index = self.slot(level, node.address, occurrences[key])
            occurrences[key] += 1
            values[index] = node.start_time - root.start_time
            values[index + 1] = node.self_time
        return EncodedVector(
            values=values,
            timestamp=root.start_time,
            duration=root.duration,
            depth=root.depth,
        )

    def encode_all(self, root_calls: Iterable[CallNode]) -> Iterator[EncodedVector]:
        for root in root_calls:
            yield self.encode(root)
