"""Column permutation primitives shared by every permutation strategy.

A permutation is stored as a one dimensional ``int64`` array ``perm`` of
length ``k`` where column ``i`` of the permuted matrix is column ``perm[i]`` of
the input matrix.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np


class InvalidPermutationError(ValueError):
    """Raised when a permutation is not a bijection on ``[0, k)``."""


def _as_matrix(data) -> np.ndarray:
    matrix = np.asarray(data, dtype=np.float32)
    if matrix.ndim != 2:
        raise ValueError(f"Expected a 2-D matrix, got shape {matrix.shape}")
    rows, k = matrix.shape
    if rows <= 0 or k <= 0:
        raise ValueError(f"Matrix dimensions must be positive, got {rows} x {k}")
    return matrix


def column_energies(data) -> np.ndarray:
    """Return the L2 norm of every column as ``float32``.

    Squares are accumulated in double precision so that wide matrices do not
    lose precision or overflow before the square root is taken.
    """

    matrix = _as_matrix(data)
    wide = matrix.astype(np.float64)
    sums = np.einsum("ij,ij->j", wide, wide)
    return np.sqrt(sums).astype(np.float32)


def order_by_energy_descending(energies: Sequence[float]) -> np.ndarray:
    """Return column indices ordered from the highest to the lowest energy.

    Equal energies keep ascending column order. Callers should only rely on
    the result being a valid permutation.
    """

    values = np.asarray(energies, dtype=np.float64)
    return np.argsort(-values, kind="stable").astype(np.int64)


def validate_permutation(permutation, k: int) -> np.ndarray:
    """Return ``permutation`` as an ``int64`` array after checking it is a bijection."""

    perm = np.asarray(permutation)
    if perm.ndim != 1 or perm.shape[0] != k:
        raise InvalidPermutationError(
            f"Permutation length {perm.size} does not match column count {k}"
        )
    if perm.size and not np.issubdtype(perm.dtype, np.integer):
        raise InvalidPermutationError(f"Permutation must contain integers, got {perm.dtype}")
    perm = perm.astype(np.int64, copy=False)
    if not np.array_equal(np.sort(perm), np.arange(k, dtype=np.int64)):
        raise InvalidPermutationError("Permutation is not a bijection on [0, k)")
    return perm


def apply_permutation(data, permutation) -> np.ndarray:
    """Return a new matrix whose column ``i`` is column ``permutation[i]`` of ``data``."""

    matrix = _as_matrix(data)
    perm = validate_permutation(permutation, matrix.shape[1])
    return np.ascontiguousarray(matrix[:, perm])


def invert_permutation(permutation) -> np.ndarray:
    perm = validate_permutation(permutation, np.asarray(permutation).size)
    inverse = np.empty_like(perm)
    inverse[perm] = np.arange(perm.size, dtype=np.int64)
    return inverse


def energy_permutation(data) -> np.ndarray:
    """Shortcut for ``order_by_energy_descending(column_energies(data))``."""

    return order_by_energy_descending(column_energies(data))


__all__ = [
    "InvalidPermutationError",
    "apply_permutation",
    "column_energies",
    "energy_permutation",
    "invert_permutation",
    "order_by_energy_descending",
    "validate_permutation",
]
