"""DB package exposing public helpers."""

from .arrays_store import ArrayStore, EncodedVector, EncodingMode, StoreMetadata, iter_vectors, read_session
from .call_tree import CallNode, build_call_tree, build_call_trees, iter_root_calls, walk
from .repository import TraceData, TraceRepository
from .results import ResultStore, ResultSummary, ScoreInterval

__all__ = (
    "ArrayStore",
    "EncodedVector",
    "EncodingMode",
    "StoreMetadata",
    "iter_vectors",
    "read_session",
    "CallNode",
    "build_call_tree",
    "build_call_trees",
    "iter_root_calls",
    "walk",
    "TraceData",
    "TraceRepository",
    "ResultStore",
    "ResultSummary",
    "ScoreInterval",
)
