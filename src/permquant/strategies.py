"""Column permutation strategies and the strategy registry."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

import numpy as np

from .householder import DEFAULT_REGULARIZATION, PivotOutcome, pivoted_qr_permutation
from .permutation import apply_permutation, energy_permutation

logger = logging.getLogger(__name__)

StrategyOutput = Tuple[np.ndarray, Optional[np.ndarray]]

ATTENTION_PROJECTION_RE = re.compile(
    r"^model\.layers\.(\d+)\.self_attn\.(q|k|v|o)_proj\.weight$"
)
_ROLE_NAMES = {"q": "query", "k": "key", "v": "value", "o": "output"}

QR_MIN_DIM = 32


class UnsupportedStrategyError(NotImplementedError):
    """Raised when a strategy selector has no implementation."""


class StrategyKind(str, Enum):
    ENERGY = "l2_norm"
    ATTENTION_AWARE = "attention_aware"
    QR_PIVOT = "qr_pivot"
    LEARNABLE = "learnable"


_KIND_ALIASES = {
    "energy": StrategyKind.ENERGY,
    "energy_order": StrategyKind.ENERGY,
    "l2": StrategyKind.ENERGY,
}


@dataclass(frozen=True)
class StrategySelector:
    """Closed choice of permutation strategy.

    ``learning_rate`` and ``iterations`` only apply to
    :attr:`StrategyKind.LEARNABLE`, which is currently an alias for the
    energy ordering.
    """

    kind: StrategyKind = StrategyKind.ENERGY
    learning_rate: float = 0.01
    iterations: int = 1000

    @classmethod
    def parse(cls, name: str) -> "StrategySelector":
        key = name.strip().lower()
        kind = _KIND_ALIASES.get(key)
        if kind is None:
            try:
                kind = StrategyKind(key)
            except ValueError:
                raise UnsupportedStrategyError(f"Unknown permutation strategy {name!r}") from None
        return cls(kind=kind)

    @property
    def name(self) -> str:
        return self.kind.value


class PermutationStrategy:
    """Base class: choose and apply a column permutation for one tensor.

    :meth:`apply` returns the permuted matrix and the permutation, or the
    untouched matrix and ``None`` when the tensor must not be permuted.
    """

    name = "base"

    def apply(self, data: np.ndarray, tensor_name: str) -> StrategyOutput:  # pragma: no cover - abstract
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class EnergyOrderStrategy(PermutationStrategy):
    """Order columns by descending L2 energy."""

    name = "L2Norm"

    def apply(self, data: np.ndarray, tensor_name: str) -> StrategyOutput:
        perm = energy_permutation(data)
        return apply_permutation(data, perm), perm


class LearnableStrategy(EnergyOrderStrategy):
    """Placeholder for a learned permutation.

    No optimisation is performed; the energy ordering is returned and the
    hyper-parameters are only kept for reporting.
    """

    name = "Learnable"

    def __init__(self, learning_rate: float = 0.01, iterations: int = 1000) -> None:
        self.learning_rate = learning_rate
        self.iterations = iterations

    def __repr__(self) -> str:
        return (
            f"LearnableStrategy(learning_rate={self.learning_rate}, "
            f"iterations={self.iterations})"
        )


class LayerPermutationCache:
    """Per-layer permutations shared by the query/key/value projections.

    Lookups and inserts happen under one lock, so the first permutation
    computed for a layer is the one every later caller observes.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[int, np.ndarray] = {}

    def get_or_compute(self, layer_id: int, compute: Callable[[], np.ndarray]) -> np.ndarray:
        with self._lock:
            cached = self._entries.get(layer_id)
            if cached is None:
                cached = np.asarray(compute(), dtype=np.int64)
                cached.setflags(write=False)
                self._entries[layer_id] = cached
                logger.debug("Cached permutation for layer %d", layer_id)
            return cached

    def get(self, layer_id: int) -> Optional[np.ndarray]:
        with self._lock:
            return self._entries.get(layer_id)

    def __contains__(self, layer_id: object) -> bool:
        with self._lock:
            return layer_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def parse_attention_projection(name: str) -> Optional[Tuple[int, str]]:
    """Return ``(layer_id, role)`` for self-attention projection weights."""

    match = ATTENTION_PROJECTION_RE.match(name)
    if match is None:
        return None
    return int(match.group(1)), _ROLE_NAMES[match.group(2)]


class AttentionAwareStrategy(PermutationStrategy):
    """Share one permutation across the q/k/v projections of a layer.

    Output projections are left unpermuted and every other tensor is ordered
    by column energy.
    """

    name = "AttentionAware"

    def __init__(self, cache: LayerPermutationCache | None = None) -> None:
        self.cache = cache if cache is not None else LayerPermutationCache()
        self._fallback = EnergyOrderStrategy()

    def apply(self, data: np.ndarray, tensor_name: str) -> StrategyOutput:
        parsed = parse_attention_projection(tensor_name)
        if parsed is None:
            return self._fallback.apply(data, tensor_name)
        layer_id, role = parsed
        if role == "output":
            return np.asarray(data, dtype=np.float32), None
        perm = self.cache.get_or_compute(layer_id, lambda: energy_permutation(data))
        return apply_permutation(data, perm), perm


class QRPivotStrategy(PermutationStrategy):
    """Rank columns with a partial pivoted Householder QR.

    Small matrices and failed factorisations use the energy ordering.
    """

    name = "QRPivot"

    def __init__(self, regularization: float = DEFAULT_REGULARIZATION) -> None:
        self.regularization = regularization
        self._fallback = EnergyOrderStrategy()

    def factorize(self, data: np.ndarray) -> PivotOutcome:
        return pivoted_qr_permutation(data, regularization=self.regularization)

    def apply(self, data: np.ndarray, tensor_name: str) -> StrategyOutput:
        rows, k = np.shape(data)
        if rows < QR_MIN_DIM or k < QR_MIN_DIM:
            return self._fallback.apply(data, tensor_name)

        outcome = self.factorize(data)
        if not outcome.ok:
            logger.warning(
                "QR pivoting failed for %s, falling back to L2: %s", tensor_name, outcome.error
            )
            return self._fallback.apply(data, tensor_name)

        perm = outcome.permutation
        logger.debug(
            "QR pivot strategy applied to %s (%d pivot steps): perm[0..5] = %s",
            tensor_name,
            outcome.steps,
            perm[:5].tolist(),
        )
        return apply_permutation(data, perm), perm

    def __repr__(self) -> str:
        return f"QRPivotStrategy(regularization={self.regularization})"


def create_strategy(
    selector: StrategySelector | StrategyKind | str,
    *,
    cache: LayerPermutationCache | None = None,
    regularization: float = DEFAULT_REGULARIZATION,
) -> PermutationStrategy:
    """Construct the strategy named by ``selector``.

    Unknown selectors raise :class:`UnsupportedStrategyError`.
    """

    if isinstance(selector, str) and not isinstance(selector, StrategyKind):
        selector = StrategySelector.parse(selector)
    if isinstance(selector, StrategyKind):
        selector = StrategySelector(kind=selector)
    kind = selector.kind
    if kind is StrategyKind.ENERGY:
        return EnergyOrderStrategy()
    if kind is StrategyKind.ATTENTION_AWARE:
        return AttentionAwareStrategy(cache)
    if kind is StrategyKind.QR_PIVOT:
        return QRPivotStrategy(regularization)
    if kind is StrategyKind.LEARNABLE:
        return LearnableStrategy(selector.learning_rate, selector.iterations)
    raise UnsupportedStrategyError(f"{kind!r} strategy not yet implemented")


__all__ = [
    "ATTENTION_PROJECTION_RE",
    "AttentionAwareStrategy",
    "EnergyOrderStrategy",
    "LayerPermutationCache",
    "LearnableStrategy",
    "PermutationStrategy",
    "QRPivotStrategy",
    "QR_MIN_DIM",
    "StrategyKind",
    "StrategyOutput",
    "StrategySelector",
    "UnsupportedStrategyError",
    "create_strategy",
    "parse_attention_projection",
]
