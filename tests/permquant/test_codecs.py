from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from permquant import codecs


def test_block_layouts() -> None:
    q8k = codecs.get_codec("q8_k")
    q80 = codecs.get_codec("Q8_0")

    assert q8k.block_bytes == 4 + 256 + 2 * 16 == 292
    assert q80.block_bytes == 2 + 32 == 34
    assert q8k.block_width == 256
    assert q80.block_width == 32
    assert codecs.available_codecs() == ("q8_0", "q8_k")
    assert codecs.codec_for_tag(q8k.tag) is q8k
    assert codecs.codec_for_tag(q80.tag) is q80
    assert codecs.codec_for_tag(0xFF) is None


def test_round_half_away_from_zero() -> None:
    values = np.array([0.5, 1.5, 2.5, -0.5, -2.5, 0.49], dtype=np.float32)

    np.testing.assert_array_equal(
        codecs.round_half_away(values), [1.0, 2.0, 3.0, -1.0, -3.0, 0.0]
    )


@pytest.mark.parametrize("name", ["q8_k", "q8_0"])
def test_quantize_row_error_is_bounded(name: str) -> None:
    codec = codecs.get_codec(name)
    rng = np.random.default_rng(1)
    row = rng.standard_normal(codec.block_width * 3).astype(np.float32)

    blocks = codec.quantize_row(row)
    restored = codec.dequantize(blocks)

    assert blocks.shape == (3,)
    for index in range(3):
        chunk = slice(index * codec.block_width, (index + 1) * codec.block_width)
        amax = float(np.abs(row[chunk]).max())
        assert np.abs(restored[chunk] - row[chunk]).max() <= amax / 127.0 + 1e-6


@pytest.mark.parametrize("name", ["q8_k", "q8_0"])
def test_zero_blocks_have_zero_scale(name: str) -> None:
    codec = codecs.get_codec(name)

    blocks = codec.quantize_row(np.zeros(codec.block_width, dtype=np.float32))

    assert float(blocks["d"][0]) == 0.0
    assert not blocks["qs"].any()
    np.testing.assert_array_equal(codec.dequantize(blocks), 0.0)


def test_q8k_scale_follows_signed_maximum() -> None:
    codec = codecs.Q8KCodec()
    row = np.full(256, 0.25, dtype=np.float32)
    row[5] = 1.0
    row[9] = -0.5

    block = codec.quantize_row(row)[0]

    assert block["qs"][5] == -128
    assert block["qs"][0] == -32
    assert block["qs"][9] == 64
    assert block["d"] == pytest.approx(-1.0 / 128.0)


def test_q8k_clamps_opposite_sign_extreme() -> None:
    codec = codecs.Q8KCodec()
    row = np.zeros(256, dtype=np.float32)
    row[0] = -1.0
    row[1] = 1.0

    block = codec.quantize_row(row)[0]

    # The first maximum fixes the sign; its mirror image saturates at 127.
    assert block["qs"][0] == -128
    assert block["qs"][1] == 127
    assert block["d"] == pytest.approx(1.0 / 128.0)


def test_q8k_block_sums() -> None:
    codec = codecs.Q8KCodec()
    rng = np.random.default_rng(4)

    blocks = codec.quantize_row(rng.uniform(-1, 1, size=512).astype(np.float32))

    for block in blocks:
        expected = block["qs"].astype(np.int32).reshape(16, 16).sum(axis=1)
        np.testing.assert_array_equal(block["bsums"], expected)


def test_q80_scale_is_stored_as_half() -> None:
    codec = codecs.Q80Codec()
    row = np.linspace(-2.0, 1.0, 32, dtype=np.float32)

    block = codec.quantize_row(row)[0]

    assert block["d"].dtype == np.float16
    assert float(block["d"]) == pytest.approx(2.0 / 127.0, rel=1e-3)
    assert block["qs"][0] == -127
    assert np.abs(block["qs"]).max() <= 127


@pytest.mark.parametrize("name", ["q8_k", "q8_0"])
def test_quantize_rows_is_row_major(name: str) -> None:
    codec = codecs.get_codec(name)
    rng = np.random.default_rng(2)
    matrix = rng.uniform(-1, 1, size=(3, codec.block_width * 2)).astype(np.float32)

    blocks = codec.quantize_rows(matrix)

    assert blocks.size == 6
    for row in range(3):
        expected = codec.quantize_row(matrix[row])
        assert blocks[row * 2 : row * 2 + 2].tobytes() == expected.tobytes()
    restored = codec.dequantize_rows(blocks, 3, codec.block_width * 2)
    assert restored.shape == matrix.shape


@pytest.mark.parametrize("name", ["q8_k", "q8_0"])
def test_misaligned_width_is_rejected(name: str) -> None:
    codec = codecs.get_codec(name)

    with pytest.raises(codecs.CodecError):
        codec.quantize_row(np.zeros(codec.block_width + 1, dtype=np.float32))
    with pytest.raises(codecs.CodecError):
        codec.quantize_rows(np.zeros((2, codec.block_width - 1), dtype=np.float32))
    with pytest.raises(codecs.CodecError):
        codec.blocks_per_row(0)


def test_quantize_rows_requires_matrix() -> None:
    with pytest.raises(codecs.CodecError):
        codecs.Q80Codec().quantize_rows(np.zeros(64, dtype=np.float32))


@pytest.mark.parametrize("name", ["q8_k", "q8_0"])
def test_matmul_matches_dequantised_product(name: str) -> None:
    codec = codecs.get_codec(name)
    rng = np.random.default_rng(8)
    k = codec.block_width * 2
    weights = rng.uniform(-1, 1, size=(3, k)).astype(np.float32)
    lhs = rng.uniform(-1, 1, size=(2, k)).astype(np.float32)
    blocks = codec.quantize_rows(weights)

    out = codec.matmul((2, k, 3), lhs, blocks)

    lhs_restored = codec.dequantize_rows(codec.quantize_rows(lhs), 2, k)
    weights_restored = codec.dequantize_rows(blocks, 3, k)
    assert out.shape == (2, 3)
    assert out.dtype == np.float32
    np.testing.assert_allclose(out, lhs_restored @ weights_restored.T, rtol=1e-4, atol=1e-3)


def test_matmul_with_ones_approximates_row_sums() -> None:
    codec = codecs.Q8KCodec()
    rng = np.random.default_rng(3)
    weights = rng.uniform(-1, 1, size=(4, 512)).astype(np.float32)

    out = codec.matmul((1, 512, 4), np.ones(512, dtype=np.float32), codec.quantize_rows(weights))

    np.testing.assert_allclose(out[0], weights.sum(axis=1), atol=0.25)


def test_matmul_rejects_wrong_block_count() -> None:
    codec = codecs.Q80Codec()
    blocks = codec.quantize_rows(np.ones((2, 64), dtype=np.float32))

    with pytest.raises(codecs.CodecError):
        codec.matmul((1, 64, 3), np.ones(64, dtype=np.float32), blocks)


def test_unknown_codec_is_rejected() -> None:
    with pytest.raises(codecs.CodecError, match="q8_0"):
        codecs.get_codec("q4_k")


def test_get_codec_passes_instances_through() -> None:
    codec = codecs.Q80Codec()

    assert codecs.get_codec(codec) is codec
