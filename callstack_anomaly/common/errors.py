"""Exception hierarchy shared by the storage, analysis and service layers."""

from __future__ import annotations


class CallStackAnomalyError(Exception):
    """Base class for every error raised by this package."""


class ShapeMismatchError(CallStackAnomalyError):
    """A call tree does not fit the layout its vector is being encoded with."""


class StorageIOError(CallStackAnomalyError):
    """Opening, writing or closing one of the container files failed."""


class DecodeFailureError(CallStackAnomalyError):
    """A record read back from the container is corrupt, foreign or missing."""


class StoreSessionError(CallStackAnomalyError):
    """A container session was opened or used in an invalid order."""


class MissingExternalModelError(CallStackAnomalyError):
    """A model-based analysis was configured without a usable model file."""


class AnalysisCancelled(CallStackAnomalyError):
    """Cooperative cancellation observed at a stage boundary."""
