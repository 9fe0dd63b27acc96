"""On-disk layout for quantised tensors and their permutation sidecars.

A quantised artefact is a 24 byte header of six little-endian ``uint32``
fields (magic, version, rows, k, blocks per row, element tag) followed by
``rows * blocks_per_row`` codec blocks. When a column permutation was applied
a sidecar with the ``.perm`` suffix sits next to the artefact.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import numpy as np

from .codecs import BlockCodec, codec_for_tag, get_codec
from .permutation import apply_permutation, invert_permutation, validate_permutation

MAGIC_ARTIFACT = 0x4B513838
FORMAT_VERSION = 1
MAGIC_PERMUTATION = 0x4D524550
PERMUTATION_SUFFIX = ".perm"

HEADER_STRUCT = struct.Struct("<6I")
SIDECAR_HEADER_STRUCT = struct.Struct("<2I")


class ArtifactFormatError(ValueError):
    """Raised when a quantised artefact or sidecar fails validation."""


@dataclass(frozen=True)
class ArtifactHeader:
    magic: int
    version: int
    rows: int
    k: int
    blocks_per_row: int
    dtype: int

    @property
    def total_blocks(self) -> int:
        return self.rows * self.blocks_per_row

    def to_bytes(self) -> bytes:
        return HEADER_STRUCT.pack(
            self.magic, self.version, self.rows, self.k, self.blocks_per_row, self.dtype
        )

    @classmethod
    def from_bytes(cls, raw: bytes) -> "ArtifactHeader":
        if len(raw) < HEADER_STRUCT.size:
            raise ArtifactFormatError(
                f"Header is truncated: {len(raw)} < {HEADER_STRUCT.size} bytes"
            )
        return cls(*HEADER_STRUCT.unpack_from(raw))


@dataclass(frozen=True)
class QuantizedTensor:
    """A validated artefact loaded back from disk."""

    header: ArtifactHeader
    codec: BlockCodec
    blocks: np.ndarray
    permutation: Optional[np.ndarray]

    @property
    def rows(self) -> int:
        return self.header.rows

    @property
    def k(self) -> int:
        return self.header.k


def sidecar_path(artifact_path: Path) -> Path:
    return Path(artifact_path).with_suffix(PERMUTATION_SUFFIX)


def write_artifact(path: Path, rows: int, k: int, blocks: np.ndarray, codec) -> int:
    """Write the header and block stream to ``path``; returns bytes written."""

    codec = get_codec(codec)
    per_row = codec.blocks_per_row(k)
    if rows <= 0:
        raise ValueError(f"Row count must be positive, got {rows}")
    if blocks.dtype != codec.block_dtype:
        raise TypeError(f"Blocks have dtype {blocks.dtype}, expected {codec.name} blocks")
    if blocks.size != rows * per_row:
        raise ValueError(
            f"Block count {blocks.size} does not match {rows} rows x {per_row} blocks"
        )
    header = ArtifactHeader(
        magic=MAGIC_ARTIFACT,
        version=FORMAT_VERSION,
        rows=rows,
        k=k,
        blocks_per_row=per_row,
        dtype=codec.tag,
    )
    payload = np.ascontiguousarray(blocks).tobytes()
    path = Path(path)
    with path.open("wb") as fh:
        fh.write(header.to_bytes())
        fh.write(payload)
    return HEADER_STRUCT.size + len(payload)


def write_permutation(artifact_path: Path, permutation) -> Path:
    perm = np.asarray(permutation)
    perm = validate_permutation(perm, perm.size)
    target = sidecar_path(artifact_path)
    with target.open("wb") as fh:
        fh.write(SIDECAR_HEADER_STRUCT.pack(MAGIC_PERMUTATION, perm.size))
        fh.write(perm.astype("<u4").tobytes())
    return target


def remove_permutation(artifact_path: Path) -> bool:
    """Delete the sidecar of ``artifact_path``; returns whether one existed."""

    target = sidecar_path(artifact_path)
    if not target.exists():
        return False
    target.unlink()
    return True


def load_permutation(artifact_path: Path) -> Optional[np.ndarray]:
    """Return the permutation stored next to ``artifact_path``.

    ``None`` means no sidecar exists, i.e. the identity order was used. A
    sidecar that exists but cannot be parsed raises :class:`ArtifactFormatError`.
    """

    target = sidecar_path(artifact_path)
    if not target.exists():
        return None
    data = target.read_bytes()
    if len(data) < SIDECAR_HEADER_STRUCT.size:
        raise ArtifactFormatError(f"perm file too small: {target}")
    magic, count = SIDECAR_HEADER_STRUCT.unpack_from(data)
    if magic != MAGIC_PERMUTATION:
        raise ArtifactFormatError(f"bad perm magic in {target}")
    expected = SIDECAR_HEADER_STRUCT.size + 4 * count
    if len(data) != expected:
        raise ArtifactFormatError(
            f"perm size mismatch {target} (got {len(data)}, expect {expected})"
        )
    indices = np.frombuffer(data, dtype="<u4", offset=SIDECAR_HEADER_STRUCT.size)
    try:
        return validate_permutation(indices.astype(np.int64), count)
    except ValueError as exc:
        raise ArtifactFormatError(f"invalid permutation in {target}: {exc}") from exc


def read_artifact(path: Path, codec=None) -> Tuple[ArtifactHeader, BlockCodec, np.ndarray]:
    path = Path(path)
    data = path.read_bytes()
    header = ArtifactHeader.from_bytes(data)
    if header.magic != MAGIC_ARTIFACT:
        raise ArtifactFormatError(f"bad magic in {path}")
    found = codec_for_tag(header.dtype)
    if found is None:
        raise ArtifactFormatError(f"unexpected dtype 0x{header.dtype:02x} in {path}")
    if codec is not None and get_codec(codec).tag != found.tag:
        raise ArtifactFormatError(
            f"unexpected dtype in {path}: {found.name}, expected {get_codec(codec).name}"
        )
    if header.k != header.blocks_per_row * found.block_width:
        raise ArtifactFormatError(
            f"size mismatch in {path}: k={header.k} vs {header.blocks_per_row} blocks per row"
        )
    expected = HEADER_STRUCT.size + header.total_blocks * found.block_bytes
    if len(data) != expected:
        raise ArtifactFormatError(
            f"size mismatch in {path} (got {len(data)}, expect {expected})"
        )
    blocks = np.frombuffer(data, dtype=found.block_dtype, offset=HEADER_STRUCT.size).copy()
    return header, found, blocks


def load_quantized_tensor(path: Path, codec=None) -> QuantizedTensor:
    """Load a quantised artefact and, if present, its permutation sidecar."""

    header, found, blocks = read_artifact(path, codec)
    permutation = load_permutation(path)
    if permutation is not None and permutation.size != header.k:
        raise ArtifactFormatError(
            f"permutation length {permutation.size} does not match k={header.k} for {path}"
        )
    return QuantizedTensor(header=header, codec=found, blocks=blocks, permutation=permutation)


def dequantize_tensor(path: Path, codec=None) -> np.ndarray:
    """Decode an artefact back to a ``rows x k`` matrix in the original column order."""

    tensor = load_quantized_tensor(path, codec)
    matrix = tensor.codec.dequantize_rows(tensor.blocks, tensor.rows, tensor.k)
    if tensor.permutation is None:
        return matrix
    return apply_permutation(matrix, invert_permutation(tensor.permutation))


__all__ = [
    "ArtifactFormatError",
    "ArtifactHeader",
    "FORMAT_VERSION",
    "HEADER_STRUCT",
    "MAGIC_ARTIFACT",
    "MAGIC_PERMUTATION",
    "PERMUTATION_SUFFIX",
    "QuantizedTensor",
    "dequantize_tensor",
    "load_permutation",
    "load_quantized_tensor",
    "read_artifact",
    "remove_permutation",
    "sidecar_path",
    "write_artifact",
    "write_permutation",
]
