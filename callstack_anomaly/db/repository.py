"""High level interface to load call-tree traces and locate their containers."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from callstack_anomaly.common.settings import Settings, get_settings
from callstack_anomaly.db.arrays_store import ANALYSIS_ID, ArrayStore
from callstack_anomaly.db.call_tree import CallNode, build_call_trees, count_nodes, iter_root_calls
from callstack_anomaly.db.schemas import TracePayload

logger = logging.getLogger(__name__)


@dataclass
class TraceData:
    name: str
    trees: List[CallNode]

    @property
    def node_count(self) -> int:
        return count_nodes(self.trees)


def load_payload_from_file(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError("Trace JSON must contain an object with a 'calls' collection")
    data.setdefault("name", path.stem)
    return data


def trace_key(name: str) -> str:
    slug = re.sub(r"[^a-z0-9._-]+", "-", name.strip().lower()).strip("-.")
    return slug or "trace"


class TraceRepository:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    @staticmethod
    def validate_payload(payload: Dict[str, Any]) -> TracePayload:
        return TracePayload.model_validate(payload)

    def load_trace(self, payload: Dict[str, Any]) -> TraceData:
        validated = self.validate_payload(payload)
        trees = build_call_trees(validated.calls)
        logger.info("Loaded trace %r with %s top-level calls", validated.name, len(trees))
        return TraceData(name=validated.name, trees=trees)

    def root_calls(self, trace: TraceData, target_depth: Optional[int] = None) -> List[CallNode]:
        depth = target_depth if target_depth is not None else self.settings.target_depth
        roots = iter_root_calls(trace.trees, depth)
        logger.info("Found %s root calls at depth %s in %r", len(roots), depth, trace.name)
        return roots

    def supplementary_dir(self, trace_name: str) -> Path:
        return Path(self.settings.supplementary_dir) / trace_key(trace_name)

    def array_store(self, trace_name: str, analysis_name: str = ANALYSIS_ID) -> ArrayStore:
        return ArrayStore(self.supplementary_dir(trace_name), analysis_name)
