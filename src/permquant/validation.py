"""Reconstruction checks for quantised weight matrices.

Both checks multiply a probe vector through the quantised blocks with the
codec's matmul and compare the result with the same product computed on the
floating point matrix. They are diagnostics only; callers decide what to do
with the numbers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .codecs import BlockCodec

logger = logging.getLogger(__name__)

LOSSY_MSE_THRESHOLD = 1e-2
DIVERGENCE_THRESHOLD = 1e-6


def uniform_probe(k: int) -> np.ndarray:
    return np.ones(k, dtype=np.float32)


def gradient_probe(k: int) -> np.ndarray:
    return (np.arange(k, dtype=np.float32) + np.float32(1.0)) / np.float32(k)


def probe_mse(original: np.ndarray, blocks: np.ndarray, codec: BlockCodec, probe: np.ndarray) -> float:
    """Mean squared error between ``original @ probe`` and the quantised product."""

    matrix = np.asarray(original, dtype=np.float32)
    rows, k = matrix.shape
    expected = matrix @ probe
    actual = codec.matmul((1, k, rows), probe, blocks).reshape(rows)
    diff = expected.astype(np.float64) - actual.astype(np.float64)
    return float(np.mean(diff * diff))


def validate_uniform(original: np.ndarray, blocks: np.ndarray, codec: BlockCodec) -> float:
    return probe_mse(original, blocks, codec, uniform_probe(np.shape(original)[1]))


def validate_gradient(original: np.ndarray, blocks: np.ndarray, codec: BlockCodec) -> float:
    return probe_mse(original, blocks, codec, gradient_probe(np.shape(original)[1]))


@dataclass(frozen=True)
class ValidationReport:
    name: str
    mse_uniform: float
    mse_gradient: float
    divergence_threshold: float = DIVERGENCE_THRESHOLD
    lossy_threshold: float = LOSSY_MSE_THRESHOLD

    @property
    def divergence(self) -> float:
        return abs(self.mse_uniform - self.mse_gradient)

    @property
    def diverged(self) -> bool:
        return self.divergence > self.divergence_threshold

    @property
    def lossy(self) -> bool:
        return self.mse_uniform > self.lossy_threshold or self.mse_gradient > self.lossy_threshold

    def as_tuple(self) -> tuple[str, float, float]:
        return self.name, self.mse_uniform, self.mse_gradient


def validate_quantization(
    name: str,
    original: np.ndarray,
    blocks: np.ndarray,
    codec: BlockCodec,
    *,
    divergence_threshold: float = DIVERGENCE_THRESHOLD,
    lossy_threshold: float = LOSSY_MSE_THRESHOLD,
) -> ValidationReport:
    """Run both probe checks and log warnings; never raises on bad numbers."""

    report = ValidationReport(
        name=name,
        mse_uniform=validate_uniform(original, blocks, codec),
        mse_gradient=validate_gradient(original, blocks, codec),
        divergence_threshold=divergence_threshold,
        lossy_threshold=lossy_threshold,
    )
    logger.info(
        "  MSE (uniform): %.6e, MSE (gradient): %.6e", report.mse_uniform, report.mse_gradient
    )
    if report.diverged:
        logger.warning("%s: validation methods differ by %.8e", name, report.divergence)
    if report.lossy:
        logger.warning("%s: high MSE detected - quantization may be lossy", name)
    return report


__all__ = [
    "DIVERGENCE_THRESHOLD",
    "LOSSY_MSE_THRESHOLD",
    "ValidationReport",
    "gradient_probe",
    "probe_mse",
    "uniform_probe",
    "validate_gradient",
    "validate_quantization",
    "validate_uniform",
]
