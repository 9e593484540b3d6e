"""Autoencoder model used by the model-based variants.

Training runs over an open read session of an :class:`ArrayStore` and pickles
a :class:`ReconstructionScorer`; detection loads it back with
:func:`load_scorer`. The score of a vector is its mean squared reconstruction
error, so larger means more anomalous.
"""

from __future__ import annotations

import logging
import os
import pickle
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, List, Optional, Union

import numpy as np
from sklearn.neural_network import MLPRegressor
from sklearn.preprocessing import StandardScaler

from callstack_anomaly.common.errors import DecodeFailureError, MissingExternalModelError, StorageIOError
from callstack_anomaly.db.arrays_store import ArrayStore, iter_vectors

logger = logging.getLogger(__name__)

RANDOM_SEED = 12345
HIDDEN_LAYERS = (15, 5, 15)
L2_PENALTY = 1e-5


@dataclass
class ReconstructionScorer:
    estimator: Any
    scaler: Optional[StandardScaler] = None

    def score(self, vector: np.ndarray) -> float:
        features = np.asarray(vector, dtype=np.float64).reshape(1, -1)
        if self.scaler is not None:
            features = self.scaler.transform(features)
        reconstruction = np.asarray(self.estimator.predict(features)).reshape(features.shape)
        return float(np.mean((reconstruction - features) ** 2))


@dataclass
class TrainingOutcome:
    model_path: Optional[Path]
    vectors: int
    epochs: int
    completed: bool
    error: Optional[str] = None


def iter_batches(store: ArrayStore, batch_size: int) -> Iterator[np.ndarray]:
    batch: List[np.ndarray] = []
    for vector in iter_vectors(store):
        batch.append(vector.values)
        if len(batch) >= batch_size:
            yield np.vstack(batch)
            batch = []
    if batch:
        yield np.vstack(batch)


def _atomic_write_pickle(path: Path, data: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("wb") as handle:
        pickle.dump(data, handle)
    os.replace(tmp_path, path)
    return path


def train_autoencoder(
    store: ArrayStore,
    model_path: Union[str, Path],
    *,
    learning_rate: float,
    epochs: int,
    batch_size: int,
) -> TrainingOutcome:
    """Fit the autoencoder on every vector of ``store`` and save it.

    ``store`` must have an open read session; it is reset before each epoch.
    """
    model_path = Path(model_path)
    if store.vector_size == 0 or not store.has_next():
        logger.warning("No arrays to train on; model %s not written", model_path)
        return TrainingOutcome(model_path=None, vectors=0, epochs=0, completed=False, error="empty dataset")

    checkpoint = time.perf_counter()
    scaler = StandardScaler()
    model = MLPRegressor(
        hidden_layer_sizes=HIDDEN_LAYERS,
        activation="relu",
        solver="adam",
        alpha=L2_PENALTY,
        learning_rate_init=learning_rate,
        random_state=RANDOM_SEED,
    )

    vectors = 0
    completed_epochs = 0
    try:
        for batch in iter_batches(store, batch_size):
            scaler.partial_fit(batch)
            vectors += batch.shape[0]
        for epoch in range(epochs):
            store.reset()
            for batch in iter_batches(store, batch_size):
                features = scaler.transform(batch)
                model.partial_fit(features, features)
            completed_epochs += 1
            logger.info("Epoch %s complete", epoch)
    except (DecodeFailureError, StorageIOError) as exc:
        logger.warning("Autoencoder training stopped early: %s", exc)
        if completed_epochs == 0:
            return TrainingOutcome(model_path=None, vectors=vectors, epochs=0, completed=False, error=str(exc))
        error = str(exc)
    else:
        error = None

    _atomic_write_pickle(model_path, ReconstructionScorer(estimator=model, scaler=scaler))
    logger.info(
        "Trained autoencoder on %s vectors (%s epochs) in %.2fs; saved to %s",
        vectors,
        completed_epochs,
        time.perf_counter() - checkpoint,
        model_path,
    )
    return TrainingOutcome(
        model_path=model_path,
        vectors=vectors,
        epochs=completed_epochs,
        completed=error is None,
        error=error,
    )


def load_scorer(path: Union[str, Path]):
    """Load a pickled model exposing ``score(vector) -> float``.

    Bare estimators exposing ``predict`` are wrapped in a
    :class:`ReconstructionScorer`.
    """
    path = Path(path)
    if not path.is_file():
        raise MissingExternalModelError(f"Model file {path} does not exist")
    try:
        with path.open("rb") as handle:
            model = pickle.load(handle)
    except (pickle.UnpicklingError, EOFError, AttributeError, ImportError, IndexError) as exc:
        raise MissingExternalModelError(f"Model file {path} cannot be loaded: {exc}") from exc

    if isinstance(model, ReconstructionScorer):
        return model
    if callable(getattr(model, "predict", None)):
        return ReconstructionScorer(estimator=model)
    if callable(getattr(model, "score", None)):
        return model
    raise MissingExternalModelError(f"Model file {path} does not hold a scoring model")
