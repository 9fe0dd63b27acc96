from __future__ import annotations

import logging
import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from permquant import validation
from permquant.codecs import get_codec


def test_probes() -> None:
    np.testing.assert_array_equal(validation.uniform_probe(4), [1.0, 1.0, 1.0, 1.0])
    np.testing.assert_allclose(validation.gradient_probe(4), [0.25, 0.5, 0.75, 1.0])
    assert validation.gradient_probe(8).dtype == np.float32


@pytest.mark.parametrize("codec_name", ["q8_k", "q8_0"])
def test_mse_is_small_for_well_scaled_weights(codec_name: str) -> None:
    codec = get_codec(codec_name)
    rng = np.random.default_rng(0)
    matrix = rng.uniform(-1, 1, size=(16, 2 * codec.block_width)).astype(np.float32)
    blocks = codec.quantize_rows(matrix)

    uniform = validation.validate_uniform(matrix, blocks, codec)
    gradient = validation.validate_gradient(matrix, blocks, codec)

    assert np.isfinite(uniform) and np.isfinite(gradient)
    assert 0.0 <= uniform < validation.LOSSY_MSE_THRESHOLD
    assert 0.0 <= gradient < validation.LOSSY_MSE_THRESHOLD


def test_exactly_representable_matrix_has_zero_error() -> None:
    codec = get_codec("q8_k")
    matrix = np.zeros((3, 256), dtype=np.float32)
    matrix[:, 0] = 1.0

    blocks = codec.quantize_rows(matrix)

    assert validation.validate_uniform(matrix, blocks, codec) == pytest.approx(0.0, abs=1e-12)


def test_report_flags() -> None:
    clean = validation.ValidationReport("w", 1e-5, 1e-5)
    diverged = validation.ValidationReport("w", 1e-3, 5e-3)
    lossy = validation.ValidationReport("w", 0.5, 0.5)

    assert not clean.diverged and not clean.lossy
    assert diverged.diverged and not diverged.lossy
    assert diverged.divergence == pytest.approx(4e-3)
    assert lossy.lossy and not lossy.diverged
    assert clean.as_tuple() == ("w", 1e-5, 1e-5)


def test_validate_quantization_warns_on_lossy_result(caplog) -> None:
    codec = get_codec("q8_0")
    matrix = np.ones((2, 32), dtype=np.float32)
    # Blocks for a different matrix so the products disagree badly.
    blocks = codec.quantize_rows(-matrix)

    with caplog.at_level(logging.INFO, logger="permquant.validation"):
        report = validation.validate_quantization("bad.weight", matrix, blocks, codec)

    assert report.lossy
    assert "MSE (uniform)" in caplog.text
    assert "quantization may be lossy" in caplog.text
    assert "validation methods differ" in caplog.text


def test_validate_quantization_honours_thresholds(caplog) -> None:
    codec = get_codec("q8_0")
    rng = np.random.default_rng(5)
    matrix = rng.uniform(-1, 1, size=(4, 64)).astype(np.float32)
    blocks = codec.quantize_rows(matrix)

    with caplog.at_level(logging.WARNING, logger="permquant.validation"):
        report = validation.validate_quantization(
            "w", matrix, blocks, codec, divergence_threshold=1.0, lossy_threshold=1.0
        )

    assert not report.diverged and not report.lossy
    assert caplog.text == ""
