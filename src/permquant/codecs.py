"""Fixed-width 8-bit block quantisation codecs.

Two layouts are provided:

``q8_k``
    256 values per block: ``f32`` scale, 256 ``int8`` quants and sixteen
    ``int16`` partial sums (292 bytes).
``q8_0``
    32 values per block: ``f16`` scale and 32 ``int8`` quants (34 bytes).

Blocks are numpy structured arrays whose fields carry explicit little-endian
dtypes, so ``blocks.tobytes()`` is the on-disk representation regardless of
the host byte order.
"""

from __future__ import annotations

from typing import ClassVar, Dict, Tuple

import numpy as np


class CodecError(ValueError):
    """Raised when data cannot be quantised with the requested codec."""


def round_half_away(values: np.ndarray) -> np.ndarray:
    """Round to nearest, ties away from zero (C ``roundf`` semantics)."""

    return np.sign(values) * np.floor(np.abs(values) + 0.5)


class BlockCodec:
    """Base class for the block codecs.

    Subclasses define the block layout and the per-block scale rules; the
    row-level helpers and the validation matmul are shared.
    """

    name: ClassVar[str]
    tag: ClassVar[int]
    block_width: ClassVar[int]
    block_dtype: ClassVar[np.dtype]
    suffix: ClassVar[str]

    @property
    def block_bytes(self) -> int:
        return self.block_dtype.itemsize

    def blocks_per_row(self, k: int) -> int:
        if k <= 0 or k % self.block_width != 0:
            raise CodecError(
                f"inner dim {k} is not a positive multiple of {self.block_width}"
            )
        return k // self.block_width

    def zeros(self, count: int) -> np.ndarray:
        return np.zeros(count, dtype=self.block_dtype)

    # Encoding -----------------------------------------------------------

    def _encode(self, groups: np.ndarray, out: np.ndarray) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def _scales(self, blocks: np.ndarray) -> np.ndarray:  # pragma: no cover - abstract
        raise NotImplementedError

    def quantize_row(self, row) -> np.ndarray:
        """Quantise one row of ``k`` floats into ``k / block_width`` blocks."""

        values = np.asarray(row, dtype=np.float32).reshape(-1)
        count = self.blocks_per_row(values.size)
        out = self.zeros(count)
        self._encode(values.reshape(count, self.block_width), out)
        return out

    def quantize_rows(self, data) -> np.ndarray:
        """Quantise every row of a ``rows x k`` matrix; blocks are row-major."""

        matrix = np.asarray(data, dtype=np.float32)
        if matrix.ndim != 2:
            raise CodecError(f"Expected a 2-D matrix, got shape {matrix.shape}")
        rows, k = matrix.shape
        per_row = self.blocks_per_row(k)
        out = self.zeros(rows * per_row)
        self._encode(matrix.reshape(rows * per_row, self.block_width), out)
        return out

    def dequantize(self, blocks: np.ndarray) -> np.ndarray:
        """Return the flat ``float32`` reconstruction of ``blocks``."""

        scales = self._scales(blocks)
        values = blocks["qs"].astype(np.float32) * scales[:, None]
        return values.reshape(-1)

    def dequantize_rows(self, blocks: np.ndarray, rows: int, k: int) -> np.ndarray:
        expected = rows * self.blocks_per_row(k)
        if blocks.size != expected:
            raise CodecError(f"Expected {expected} blocks for {rows} x {k}, got {blocks.size}")
        return self.dequantize(blocks).reshape(rows, k)

    # Validation ---------------------------------------------------------

    def matmul(self, dims: Tuple[int, int, int], lhs, blocks: np.ndarray) -> np.ndarray:
        """Multiply ``m x k`` float activations by ``n`` quantised rows.

        ``dims`` is ``(m, k, n)``. The activations are quantised with this
        codec, then every output is the sum over blocks of the integer dot
        product scaled by both block scales. Returns an ``m x n`` ``float32``
        array.
        """

        m, k, n = dims
        per_row = self.blocks_per_row(k)
        if blocks.size != n * per_row:
            raise CodecError(f"matmul expected {n * per_row} blocks, got {blocks.size}")
        activations = np.asarray(lhs, dtype=np.float32).reshape(m, k)
        lhs_blocks = self.quantize_rows(activations).reshape(m, per_row)
        weight_blocks = blocks.reshape(n, per_row)
        weight_q = weight_blocks["qs"].astype(np.int32)
        weight_scales = self._scales(weight_blocks.reshape(-1)).reshape(n, per_row)
        out = np.empty((m, n), dtype=np.float32)
        for i in range(m):
            row_q = lhs_blocks[i]["qs"].astype(np.int32)
            ints = np.einsum("npb,pb->np", weight_q, row_q).astype(np.float32)
            scales = weight_scales * self._scales(lhs_blocks[i])[None, :]
            out[i] = np.sum(ints * scales, axis=1, dtype=np.float32)
        return out

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, block_width={self.block_width})"


class Q8KCodec(BlockCodec):
    name = "q8_k"
    tag = 0x18
    block_width = 256
    suffix = ".q8k"
    block_dtype = np.dtype(
        [("d", "<f4"), ("qs", "i1", (256,)), ("bsums", "<i2", (16,))]
    )

    def _encode(self, groups: np.ndarray, out: np.ndarray) -> None:
        abs_groups = np.abs(groups)
        pick = np.argmax(abs_groups, axis=1)
        signed_max = groups[np.arange(groups.shape[0]), pick]
        nonzero = signed_max != 0.0
        iscale = np.zeros(groups.shape[0], dtype=np.float32)
        iscale[nonzero] = np.float32(-128.0) / signed_max[nonzero]
        quants = round_half_away(groups * iscale[:, None])
        quants = np.minimum(quants, 127.0).astype(np.int8)
        out["qs"] = quants
        out["bsums"] = quants.astype(np.int32).reshape(-1, 16, 16).sum(axis=2).astype(np.int16)
        d = np.zeros(groups.shape[0], dtype=np.float32)
        d[nonzero] = np.float32(1.0) / iscale[nonzero]
        out["d"] = d

    def _scales(self, blocks: np.ndarray) -> np.ndarray:
        return blocks["d"].astype(np.float32)


class Q80Codec(BlockCodec):
    name = "q8_0"
    tag = 0x08
    block_width = 32
    suffix = ".q80"
    block_dtype = np.dtype([("d", "<f2"), ("qs", "i1", (32,))])

    def _encode(self, groups: np.ndarray, out: np.ndarray) -> None:
        d = np.abs(groups).max(axis=1) / np.float32(127.0)
        inverse = np.zeros_like(d)
        nonzero = d != 0.0
        inverse[nonzero] = np.float32(1.0) / d[nonzero]
        out["qs"] = np.clip(round_half_away(groups * inverse[:, None]), -127, 127).astype(np.int8)
        out["d"] = d.astype(np.float16)

    def _scales(self, blocks: np.ndarray) -> np.ndarray:
        return blocks["d"].astype(np.float32)


_CODECS: Dict[str, BlockCodec] = {codec.name: codec for codec in (Q8KCodec(), Q80Codec())}
_CODECS_BY_TAG: Dict[int, BlockCodec] = {codec.tag: codec for codec in _CODECS.values()}

DEFAULT_CODEC = "q8_k"


def available_codecs() -> Tuple[str, ...]:
    return tuple(sorted(_CODECS))


def get_codec(name: str | BlockCodec) -> BlockCodec:
    if isinstance(name, BlockCodec):
        return name
    try:
        return _CODECS[name.lower()]
    except KeyError:
        raise CodecError(
            f"Unknown codec {name!r}; choose one of {', '.join(available_codecs())}"
        ) from None


def codec_for_tag(tag: int) -> BlockCodec | None:
    return _CODECS_BY_TAG.get(int(tag))


__all__ = [
    "BlockCodec",
    "CodecError",
    "DEFAULT_CODEC",
    "Q80Codec",
    "Q8KCodec",
    "available_codecs",
    "codec_for_tag",
    "get_codec",
    "round_half_away",
]
