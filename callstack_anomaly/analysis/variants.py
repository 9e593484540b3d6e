"""Analysis variants selected once, at configuration time."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

from callstack_anomaly.common.errors import MissingExternalModelError
from callstack_anomaly.common.settings import Settings

N_VALUE_RANGE = (0, 100)
EPOCHS_RANGE = (1, 100)
BATCH_SIZE_RANGE = (1, 1000)


@dataclass(frozen=True)
class StatisticalVariant:
    n_value: int = 1

    name = "statistical"


@dataclass(frozen=True)
class ModelTrainVariant:
    model_path: Path
    learning_rate: float = 0.05
    epochs: int = 1
    batch_size: int = 50

    name = "model_train"


@dataclass(frozen=True)
class ModelApplyVariant:
    model_path: Path
    anomaly_threshold: float = 0.10

    name = "model_apply"


AnalysisVariant = Union[StatisticalVariant, ModelTrainVariant, ModelApplyVariant]


def _check_range(label: str, value: float, bounds: tuple) -> None:
    lower, upper = bounds
    if value < lower or value > upper:
        raise ValueError(f"{label} must be between {lower} and {upper} (got {value})")


def build_variant(settings: Settings, **overrides: Any) -> AnalysisVariant:
    """Build and validate the configured variant.

    Keyword overrides use the :class:`Settings` field names; ``None`` values
    are ignored.
    """
    values = {
        "analysis_variant": settings.analysis_variant,
        "n_value": settings.n_value,
        "learning_rate": settings.learning_rate,
        "epochs": settings.epochs,
        "batch_size": settings.batch_size,
        "model_file_path": settings.model_file_path,
        "anomaly_threshold": settings.anomaly_threshold,
    }
    unknown = set(overrides) - set(values)
    if unknown:
        raise TypeError(f"Unknown variant options: {', '.join(sorted(unknown))}")
    values.update({key: value for key, value in overrides.items() if value is not None})

    kind = str(values["analysis_variant"]).strip().lower()
    model_path: Optional[Path] = Path(values["model_file_path"]) if values["model_file_path"] else None

    if kind == StatisticalVariant.name:
        n_value = int(values["n_value"])
        _check_range("n_value", n_value, N_VALUE_RANGE)
        return StatisticalVariant(n_value=n_value)

    if kind == ModelTrainVariant.name:
        if model_path is None:
            raise MissingExternalModelError("Model training requires a model file path")
        learning_rate = float(values["learning_rate"])
        if learning_rate <= 0:
            raise ValueError("learning_rate must be > 0")
        epochs = int(values["epochs"])
        batch_size = int(values["batch_size"])
        _check_range("epochs", epochs, EPOCHS_RANGE)
        _check_range("batch_size", batch_size, BATCH_SIZE_RANGE)
        return ModelTrainVariant(
            model_path=model_path,
            learning_rate=learning_rate,
            epochs=epochs,
            batch_size=batch_size,
        )

    if kind == ModelApplyVariant.name:
        if model_path is None:
            raise MissingExternalModelError("Model-based detection requires a model file path")
        if not model_path.is_file():
            raise MissingExternalModelError(f"Model file {model_path} does not exist")
        threshold = float(values["anomaly_threshold"])
        _check_range("anomaly_threshold", threshold, (0.0, 1.0))
        return ModelApplyVariant(model_path=model_path, anomaly_threshold=threshold)

    raise ValueError(f"Unknown analysis variant {kind!r}")
