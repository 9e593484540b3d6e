"""Immutable call-tree model and helpers to build and traverse it.

Every traversal here uses an explicit stack, so arbitrarily deep call trees
never hit the interpreter recursion limit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, List, Sequence, Tuple

from callstack_anomaly.db.schemas import CallNodePayload

TOP_LEVEL_DEPTH = 1


@dataclass(frozen=True)
class CallNode:
    address: int
    depth: int
    start_time: int
    duration: int
    self_time: int
    children: Tuple[CallNode, ...] = ()

    @property
    def end_time(self) -> int:
        return self.start_time + self.duration


def walk(root: CallNode) -> Iterator[Tuple[CallNode, int]]:
    """Yield ``(node, level)`` depth-first in call order, ``root`` at level 0."""
    stack: List[Tuple[CallNode, int]] = [(root, 0)]
    while stack:
        node, level = stack.pop()
        yield node, level
        for child in reversed(node.children):
            stack.append((child, level + 1))


def build_call_tree(payload: CallNodePayload, depth: int = TOP_LEVEL_DEPTH) -> CallNode:
    """Convert a validated payload into a :class:`CallNode` tree.

    Missing depths are inferred from the parent (``depth`` is used for the
    payload itself when it carries none). Missing self times default to the
    duration not covered by the children.
    """
    # post-order: a node is built once all of its children are
    stack: List[Tuple[CallNodePayload, int, bool]] = [(payload, depth, False)]
    built: List[CallNode] = []
    while stack:
        item, item_depth, expanded = stack.pop()
        node_depth = item.depth if item.depth is not None else item_depth
        if not expanded:
            stack.append((item, item_depth, True))
            for child in reversed(item.children):
                stack.append((child, node_depth + 1, False))
            continue

        count = len(item.children)
        children = tuple(built[len(built) - count:]) if count else ()
        if count:
            del built[len(built) - count:]
        duration = int(item.duration or 0)
        self_time = item.self_time
        if self_time is None:
            self_time = max(duration - sum(child.duration for child in children), 0)
        built.append(
            CallNode(
                address=item.address,
                depth=node_depth,
                start_time=item.start,
                duration=duration,
                self_time=int(self_time),
                children=children,
            ),
        )
    return built[0]


def build_call_trees(payloads: Iterable[CallNodePayload]) -> List[CallNode]:
    return [build_call_tree(payload) for payload in payloads]


def iter_root_calls(trees: Iterable[CallNode], target_depth: int) -> List[CallNode]:
    """Return every node at ``target_depth``, ordered by start time.

    The search does not descend below a matching node: anything under it is
    part of that root call's subtree.
    """
    roots: List[CallNode] = []
    for tree in trees:
        stack: List[CallNode] = [tree]
        while stack:
            node = stack.pop()
            if node.depth == target_depth:
                roots.append(node)
                continue
            if node.depth > target_depth:
                continue
            stack.extend(reversed(node.children))
    roots.sort(key=lambda node: node.start_time)
    return roots


def count_nodes(trees: Sequence[CallNode]) -> int:
    return sum(1 for tree in trees for _ in walk(tree))
