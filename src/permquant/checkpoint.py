"""Safetensors checkpoint access and element decoding."""

from __future__ import annotations

import contextlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

import numpy as np
from safetensors import SafetensorError

logger = logging.getLogger(__name__)

SUPPORTED_DTYPES = ("F32", "F16", "BF16")


class CheckpointError(ValueError):
    """Raised when a checkpoint cannot be parsed."""


class UnsupportedDTypeError(TypeError):
    """Raised when a tensor element type cannot be decoded to ``float32``."""


def safe_open(*args, **kwargs):
    """Proxy ``safetensors.safe_open`` so it can be monkeypatched in tests."""

    from safetensors import safe_open as _safe_open

    return _safe_open(*args, **kwargs)


def decode_elements(payload, dtype: str) -> np.ndarray:
    """Decode a raw little-endian payload into a flat ``float32`` array."""

    if dtype == "F32":
        return np.frombuffer(payload, dtype="<f4").astype(np.float32)
    if dtype == "F16":
        return np.frombuffer(payload, dtype="<f2").astype(np.float32)
    if dtype == "BF16":
        raw = np.frombuffer(payload, dtype="<u2").astype(np.uint32)
        raw <<= 16
        return raw.view(np.float32)
    raise UnsupportedDTypeError(f"unsupported dtype {dtype}")


@dataclass(frozen=True)
class TensorEntry:
    name: str
    dtype: str
    shape: Tuple[int, ...]
    data_offsets: Tuple[int, int]

    @property
    def nbytes(self) -> int:
        return self.data_offsets[1] - self.data_offsets[0]


def read_safetensors_index(path: Path) -> Tuple[Dict[str, TensorEntry], int]:
    """Parse the JSON header; returns the tensor index and the payload offset."""

    with path.open("rb") as handle:
        header_len_raw = handle.read(8)
        if len(header_len_raw) != 8:
            raise CheckpointError(f"Invalid safetensors header in {path}")
        header_len = int.from_bytes(header_len_raw, "little")
        header_bytes = handle.read(header_len)
        if len(header_bytes) != header_len:
            raise CheckpointError(f"Incomplete safetensors header in {path}")
    try:
        header = json.loads(header_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CheckpointError(f"Unable to parse safetensors header in {path}") from exc
    if not isinstance(header, dict):
        raise CheckpointError("Safetensors header must be a JSON object")

    index: Dict[str, TensorEntry] = {}
    for name, entry in header.items():
        if name.startswith("__") or not isinstance(entry, dict):
            continue
        if not {"dtype", "shape", "data_offsets"}.issubset(entry):
            continue
        index[name] = TensorEntry(
            name=name,
            dtype=str(entry["dtype"]),
            shape=tuple(int(dim) for dim in entry["shape"]),
            data_offsets=tuple(int(offset) for offset in entry["data_offsets"]),
        )
    return index, 8 + header_len


class CheckpointReader(contextlib.AbstractContextManager):
    """Read named tensors from a safetensors file.

    ``F32``/``F16`` tensors go through ``safe_open``; ``BF16`` payloads (which
    numpy cannot represent) are read raw and widened by :func:`decode_elements`.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._index, self._base_offset = read_safetensors_index(self._path)
        self._safe_cm = None
        self._safe_reader = None
        self._open_reader()
        logger.debug("Opened checkpoint %s with %d tensors", self._path, len(self._index))

    def _open_reader(self) -> None:
        try:
            context = safe_open(self._path, framework="numpy")
            self._safe_reader = context.__enter__()
            self._safe_cm = context
        except SafetensorError as exc:
            if "bf16" not in str(exc).lower():
                raise CheckpointError(f"Unable to open {self._path}: {exc}") from exc
            logger.debug("safe_open fallback for %s due to unsupported dtype: %s", self._path, exc)
            self._safe_cm = None
            self._safe_reader = None

    def close(self) -> None:
        if self._safe_cm is not None:
            self._safe_cm.__exit__(None, None, None)
            self._safe_cm = None
            self._safe_reader = None

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def index(self) -> Mapping[str, TensorEntry]:
        return self._index

    def __len__(self) -> int:
        return len(self._index)

    def names(self) -> Iterator[str]:
        return iter(self._index)

    def read_payload(self, name: str) -> bytes:
        entry = self._index[name]
        start, end = entry.data_offsets
        with self._path.open("rb") as handle:
            handle.seek(self._base_offset + start)
            payload = handle.read(end - start)
        if len(payload) != end - start:
            raise CheckpointError(f"Unexpected end of safetensors payload for {name}")
        return payload

    def load_f32(self, name: str) -> np.ndarray:
        """Return tensor ``name`` as a ``float32`` array of its declared shape."""

        entry = self._index[name]
        if entry.dtype not in SUPPORTED_DTYPES:
            raise UnsupportedDTypeError(f"unsupported dtype {entry.dtype} for {name}")
        tensor: Optional[Any] = None
        if self._safe_reader is not None and entry.dtype != "BF16":
            tensor = self._safe_reader.get_tensor(name)
        if tensor is None:
            tensor = decode_elements(self.read_payload(name), entry.dtype)
        return np.asarray(tensor, dtype=np.float32).reshape(entry.shape)


def open_checkpoint(path: Path) -> CheckpointReader:
    return CheckpointReader(path)


__all__ = [
    "CheckpointError",
    "CheckpointReader",
    "SUPPORTED_DTYPES",
    "TensorEntry",
    "UnsupportedDTypeError",
    "decode_elements",
    "open_checkpoint",
    "read_safetensors_index",
    "safe_open",
]
