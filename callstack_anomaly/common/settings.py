"""Application-wide settings helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ENCODING_MODES = ("primitive", "boxed")
ANALYSIS_VARIANTS = ("statistical", "model_train", "model_apply")
TRACE_SOURCES = ("sample", "random")


@dataclass(frozen=True)
class Settings:
    supplementary_dir: Path = Path(".supplementary")
    trace_source: str = "sample"
    target_depth: int = 3
    encoding_mode: str = "boxed"
    analysis_variant: str = "statistical"
    n_value: int = 1
    learning_rate: float = 0.05
    epochs: int = 1
    batch_size: int = 50
    model_file_path: Optional[str] = None
    anomaly_threshold: float = 0.10


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _choice_env(name: str, choices: tuple, default: str) -> str:
    raw = (os.getenv(name) or "").strip().lower()
    return raw if raw in choices else default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    load_dotenv()
    supplementary_raw = os.getenv("CSA_SUPPLEMENTARY_DIR")
    model_file = os.getenv("CSA_MODEL_FILE")

    return Settings(
        supplementary_dir=Path(supplementary_raw) if supplementary_raw else Settings.supplementary_dir,
        trace_source=_choice_env("CSA_TRACE_SOURCE", TRACE_SOURCES, Settings.trace_source),
        target_depth=max(1, _int_env("CSA_TARGET_DEPTH", Settings.target_depth)),
        encoding_mode=_choice_env("CSA_ENCODING_MODE", ENCODING_MODES, Settings.encoding_mode),
        analysis_variant=_choice_env("CSA_ANALYSIS_VARIANT", ANALYSIS_VARIANTS, Settings.analysis_variant),
        n_value=_int_env("CSA_N_VALUE", Settings.n_value),
        learning_rate=_float_env("CSA_LEARNING_RATE", Settings.learning_rate),
        epochs=_int_env("CSA_EPOCHS", Settings.epochs),
        batch_size=_int_env("CSA_BATCH_SIZE", Settings.batch_size),
        model_file_path=model_file.strip() if model_file and model_file.strip() else None,
        anomaly_threshold=_float_env("CSA_ANOMALY_THRESHOLD", Settings.anomaly_threshold),
    )
