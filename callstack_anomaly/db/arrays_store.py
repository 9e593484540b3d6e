"""Compressed two-file container for encoded call-stack vectors.

A container is made of a small metadata file and a gzip-compressed stream of
msgpack records, one per vector, in write order. Usage::

    store.init_write(vector_size, EncodingMode.PRIMITIVE)
    for vector in vectors:
        store.write(vector)
    store.close_write()          # makes the data durable and readable

    with read_session(store):
        for vector in iter_vectors(store):
            ...

The metadata file is the only source for ``count``, ``vector_size`` and
``encoding_mode`` and is written exclusively by :meth:`ArrayStore.close_write`,
so a container whose write session never finished is never reported by
:meth:`ArrayStore.exists`.
"""

from __future__ import annotations

import contextlib
import gzip
import logging
import os
import re
import struct
import zlib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Iterator, Optional, Union

import msgpack
import numpy as np

from callstack_anomaly.common.errors import (
    DecodeFailureError,
    ShapeMismatchError,
    StorageIOError,
    StoreSessionError,
)

logger = logging.getLogger(__name__)

ANALYSIS_ID = "callstack-anomaly"
ARRAYS_FILE_EXTENSION = ".zip.dat"
METADATA_FILE_EXTENSION = ".metadata.dat"

# count (int64), vector size (int32), primitive flag (1 byte), big endian
_METADATA = struct.Struct(">qi?")
_PRIMITIVE_DTYPE = np.dtype("<f8")


class EncodingMode(str, Enum):
    PRIMITIVE = "primitive"
    BOXED = "boxed"


@dataclass
class EncodedVector:
    values: np.ndarray
    timestamp: int
    duration: int
    depth: int

    def __len__(self) -> int:
        return int(self.values.shape[0])


@dataclass(frozen=True)
class StoreMetadata:
    count: int
    vector_size: int
    encoding_mode: EncodingMode

    def to_bytes(self) -> bytes:
        return _METADATA.pack(self.count, self.vector_size, self.encoding_mode is EncodingMode.PRIMITIVE)

    @classmethod
    def from_bytes(cls, raw: bytes) -> StoreMetadata:
        if len(raw) != _METADATA.size:
            raise DecodeFailureError(f"Metadata record has {len(raw)} bytes, expected {_METADATA.size}")
        count, vector_size, primitive = _METADATA.unpack(raw)
        if count < 0 or vector_size < 0:
            raise DecodeFailureError("Metadata record holds negative sizes")
        mode = EncodingMode.PRIMITIVE if primitive else EncodingMode.BOXED
        return cls(count=count, vector_size=vector_size, encoding_mode=mode)


def store_name(analysis_name: str) -> str:
    """Return a stable file stem for an analysis name."""
    slug = re.sub(r"[^a-z0-9]+", "-", analysis_name.strip().lower()).strip("-")
    return slug or ANALYSIS_ID


class ArrayStore:
    """Write-once, read-many container of :class:`EncodedVector` records.

    Read and write sessions are mutually exclusive. While writing, ``written``
    counts the vectors appended so far; while reading, ``remaining`` counts
    the vectors left in the stream.
    """

    def __init__(self, directory: Union[str, Path], analysis_name: str = ANALYSIS_ID) -> None:
        self.directory = Path(directory)
        name = store_name(analysis_name)
        self.arrays_path = self.directory / f"{name}{ARRAYS_FILE_EXTENSION}"
        self.metadata_path = self.directory / f"{name}{METADATA_FILE_EXTENSION}"

        self._reader: Optional[IO[bytes]] = None
        self._unpacker: Optional[msgpack.Unpacker] = None
        self._writer: Optional[IO[bytes]] = None
        self._packer: Optional[msgpack.Packer] = None

        self.vector_size = 0
        self.encoding_mode = EncodingMode.BOXED
        self.written = 0
        self.remaining = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def exists(self) -> bool:
        return self.arrays_path.exists() and self.metadata_path.exists()

    @property
    def session(self) -> Optional[str]:
        if self._writer is not None:
            return "write"
        if self._reader is not None:
            return "read"
        return None

    def has_next(self) -> bool:
        return self._reader is not None and self.remaining > 0

    def read_metadata(self) -> StoreMetadata:
        try:
            raw = self.metadata_path.read_bytes()
        except OSError as exc:
            raise StorageIOError(f"Cannot read arrays metadata {self.metadata_path}: {exc}") from exc
        return StoreMetadata.from_bytes(raw)

    # ------------------------------------------------------------------
    # Write session
    # ------------------------------------------------------------------
    def init_write(self, vector_size: int, encoding_mode: EncodingMode = EncodingMode.BOXED) -> None:
        if self.session is not None:
            raise StoreSessionError(f"Cannot start writing: a {self.session} session is already open")
        if vector_size < 0:
            raise ValueError("vector_size must be >= 0")

        self.vector_size = int(vector_size)
        self.encoding_mode = EncodingMode(encoding_mode)
        self.written = 0

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            # a stale metadata file would make the new, unfinished stream look valid
            self.metadata_path.unlink(missing_ok=True)
            self._writer = gzip.open(self.arrays_path, "wb")
        except OSError as exc:
            self._writer = None
            logger.error("Problem initializing arrays writing at %s: %s", self.arrays_path, exc)
            raise StorageIOError(f"Cannot open {self.arrays_path} for writing: {exc}") from exc
        self._packer = msgpack.Packer(use_bin_type=True)
        logger.debug("Write session opened (%s, vector size %s)", self.encoding_mode.value, self.vector_size)

    def write(self, vector: EncodedVector) -> bool:
        """Append one vector; return ``False`` when nothing was written."""
        if self._writer is None or self._packer is None:
            logger.warning("Problem writing array; init_write() may not have been called")
            return False
        if len(vector) != self.vector_size:
            raise ShapeMismatchError(
                f"Vector of size {len(vector)} does not match container size {self.vector_size}",
            )

        if self.encoding_mode is EncodingMode.PRIMITIVE:
            payload = np.asarray(vector.values, dtype=_PRIMITIVE_DTYPE).tobytes()
        else:
            payload = [float(value) for value in vector.values]
        record = [int(vector.timestamp), int(vector.duration), int(vector.depth), payload]

        try:
            self._writer.write(self._packer.pack(record))
        except OSError as exc:
            logger.error("Problem writing array to %s: %s", self.arrays_path, exc)
            return False
        self.written += 1
        return True

    def close_write(self) -> StoreMetadata:
        """Flush the stream, then persist the metadata record."""
        if self._writer is None:
            raise StoreSessionError("No write session to close")

        writer, self._writer, self._packer = self._writer, None, None
        try:
            writer.close()
        except OSError as exc:
            logger.error("Problem closing arrays writing: %s", exc)
            raise StorageIOError(f"Cannot flush {self.arrays_path}: {exc}") from exc

        metadata = StoreMetadata(self.written, self.vector_size, self.encoding_mode)
        tmp_path = self.metadata_path.with_suffix(self.metadata_path.suffix + ".tmp")
        try:
            tmp_path.write_bytes(metadata.to_bytes())
            os.replace(tmp_path, self.metadata_path)
        except OSError as exc:
            logger.error("Problem writing arrays metadata: %s", exc)
            raise StorageIOError(f"Cannot write {self.metadata_path}: {exc}") from exc
        logger.info("Wrote %s arrays of size %s to %s", metadata.count, metadata.vector_size, self.arrays_path)
        return metadata

    def _abandon_write(self) -> None:
        writer, self._writer, self._packer = self._writer, None, None
        if writer is None:
            return
        try:
            writer.close()
        except OSError as exc:
            logger.error("Problem closing abandoned arrays stream: %s", exc)

    # ------------------------------------------------------------------
    # Read session
    # ------------------------------------------------------------------
    def init_read(self) -> StoreMetadata:
        if self.session is not None:
            raise StoreSessionError(f"Cannot start reading: a {self.session} session is already open")

        metadata = self.read_metadata()
        self.vector_size = metadata.vector_size
        self.encoding_mode = metadata.encoding_mode
        self.remaining = metadata.count

        try:
            self._reader = gzip.open(self.arrays_path, "rb")
        except OSError as exc:
            self._reader = None
            self.remaining = 0
            logger.error("Problem initializing arrays reading at %s: %s", self.arrays_path, exc)
            raise StorageIOError(f"Cannot open {self.arrays_path} for reading: {exc}") from exc
        self._unpacker = msgpack.Unpacker(self._reader, raw=False)
        return metadata

    def read(self) -> Optional[EncodedVector]:
        """Return the next vector, or ``None`` once every vector was read."""
        if self._reader is None or self._unpacker is None:
            raise DecodeFailureError("No read session is open; call init_read() first")
        if self.remaining <= 0:
            return None

        try:
            record = self._unpacker.unpack()
        except msgpack.OutOfData as exc:
            raise DecodeFailureError(
                f"Arrays stream ended with {self.remaining} vectors still expected",
            ) from exc
        except (msgpack.UnpackException, ValueError, OSError, EOFError, zlib.error) as exc:
            raise DecodeFailureError(f"Corrupt arrays stream {self.arrays_path}: {exc}") from exc

        vector = self._decode_record(record)
        self.remaining -= 1
        return vector

    def _decode_record(self, record) -> EncodedVector:
        if not isinstance(record, (list, tuple)) or len(record) != 4:
            raise DecodeFailureError("Foreign record in arrays stream")
        timestamp, duration, depth, payload = record
        if not all(isinstance(value, int) for value in (timestamp, duration, depth)):
            raise DecodeFailureError("Record header is not made of integers")

        if self.encoding_mode is EncodingMode.PRIMITIVE:
            if not isinstance(payload, bytes) or len(payload) != self.vector_size * _PRIMITIVE_DTYPE.itemsize:
                raise DecodeFailureError("Primitive record does not match the container vector size")
            values = np.frombuffer(payload, dtype=_PRIMITIVE_DTYPE).astype(np.float64)
        else:
            if not isinstance(payload, list) or len(payload) != self.vector_size:
                raise DecodeFailureError("Boxed record does not match the container vector size")
            try:
                values = np.array(payload, dtype=np.float64)
            except (TypeError, ValueError) as exc:
                raise DecodeFailureError(f"Boxed record holds non-numeric values: {exc}") from exc
        return EncodedVector(values=values, timestamp=timestamp, duration=duration, depth=depth)

    def close_read(self) -> None:
        reader, self._reader, self._unpacker = self._reader, None, None
        if reader is None:
            return
        try:
            reader.close()
        except OSError as exc:
            logger.error("Problem closing arrays reading: %s", exc)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def reset(self) -> None:
        """Restart the open session from its beginning.

        A read session is reopened at the first vector. A write session is
        truncated and restarted with the same vector size and encoding mode.
        """
        if self._reader is not None:
            self.close_read()
            self.init_read()
        elif self._writer is not None:
            self._abandon_write()
            self.init_write(self.vector_size, self.encoding_mode)

    def dispose(self) -> None:
        """Close any open session and delete both files."""
        self._abandon_write()
        self.close_read()
        for path in (self.arrays_path, self.metadata_path):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.error("Problem deleting %s: %s", path, exc)
        self.written = 0
        self.remaining = 0


@contextlib.contextmanager
def read_session(store: ArrayStore) -> Iterator[ArrayStore]:
    """Open a read session and close it no matter how the block ends."""
    store.init_read()
    try:
        yield store
    finally:
        store.close_read()


def iter_vectors(store: ArrayStore) -> Iterator[EncodedVector]:
    while store.has_next():
        vector = store.read()
        if vector is None:
            break
        yield vector

