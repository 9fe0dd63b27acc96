"""Partial Householder QR factorisation with column pivoting.

Only the column order chosen by the pivoting is of interest; the ``R`` factor
is built in a scratch copy of the matrix and discarded afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_REGULARIZATION = 1e-6


def pivot_step_budget(k: int, rows: int | None = None) -> int:
    """Number of columns that receive a full pivoting step for a ``k`` column matrix.

    Smaller matrices are pivoted completely; wider matrices only pivot a
    leading fraction of their columns. The budget never exceeds ``rows``.
    """

    if k <= 64:
        steps = k
    elif k <= 256:
        steps = (k * 3) // 4
    elif k <= 512:
        steps = k // 2
    elif k <= 1024:
        steps = k // 3
    elif k <= 2048:
        steps = k // 4
    else:
        steps = min(max(k // 8, 256), 512)
    if rows is not None:
        steps = min(steps, rows)
    return steps


@dataclass(frozen=True)
class PivotOutcome:
    """Result of :func:`pivoted_qr_permutation`.

    Exactly one of ``permutation`` and ``error`` is set.
    """

    permutation: np.ndarray | None = None
    error: str | None = None
    steps: int = 0

    @property
    def ok(self) -> bool:
        return self.permutation is not None


def _householder_update(
    work: np.ndarray,
    norms_sq: np.ndarray,
    step: int,
    regularization: float,
) -> None:
    x = work[step:, step].astype(np.float64)
    norm_x = float(np.sqrt(x @ x))
    # Opposite sign to the pivot element avoids cancellation in v[0].
    alpha = -norm_x if x[0] >= 0.0 else norm_x
    if abs(alpha) < regularization:
        return
    v = x.copy()
    v[0] -= alpha
    v_norm_sq = float(v @ v)
    if v_norm_sq < regularization:
        return
    trailing = work[step:, step + 1 :]
    if trailing.size == 0:
        return
    dots = v @ trailing
    trailing -= np.outer(v, (2.0 * dots) / v_norm_sq)
    below = work[step + 1 :, step + 1 :]
    norms_sq[step + 1 :] = np.einsum("ij,ij->j", below, below)


def pivoted_qr_permutation(
    data,
    *,
    regularization: float = DEFAULT_REGULARIZATION,
    steps: int | None = None,
) -> PivotOutcome:
    """Rank the columns of ``data`` with a partial pivoted Householder QR.

    The first ``steps`` positions are filled by true column pivoting. The
    columns that were never pivoted are appended by descending residual
    squared norm. Numerical failures are reported through the returned
    :class:`PivotOutcome` instead of being raised.
    """

    original = np.asarray(data)
    if original.ndim != 2:
        return PivotOutcome(error=f"expected a 2-D matrix, got shape {original.shape}")
    rows, k = original.shape
    if steps is None:
        steps = pivot_step_budget(k, rows)
    steps = max(0, min(steps, rows, k))

    perm = np.arange(k, dtype=np.int64)
    work = np.array(original, dtype=np.float64, copy=True)
    try:
        with np.errstate(over="raise", invalid="raise", divide="raise"):
            if not np.all(np.isfinite(work)):
                raise FloatingPointError("matrix contains non-finite values")
            norms_sq = np.einsum("ij,ij->j", work, work)

            for step in range(steps):
                pivot = step + int(np.argmax(norms_sq[step:]))
                if pivot != step:
                    work[:, [step, pivot]] = work[:, [pivot, step]]
                    perm[[step, pivot]] = perm[[pivot, step]]
                    norms_sq[[step, pivot]] = norms_sq[[pivot, step]]
                if np.sqrt(norms_sq[step]) < regularization:
                    continue
                _householder_update(work, norms_sq, step, regularization)

            if steps < k:
                logger.debug("Sorting remaining %d columns by residual norm", k - steps)
                remaining = np.argsort(-norms_sq[steps:], kind="stable")
                perm[steps:] = perm[steps:][remaining]
    except FloatingPointError as exc:
        return PivotOutcome(error=str(exc), steps=steps)

    return PivotOutcome(permutation=perm, steps=steps)


__all__ = [
    "DEFAULT_REGULARIZATION",
    "PivotOutcome",
    "pivot_step_budget",
    "pivoted_qr_permutation",
]
