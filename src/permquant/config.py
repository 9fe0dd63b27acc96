"""Run configuration for the quantisation pipeline."""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .codecs import DEFAULT_CODEC
from .householder import DEFAULT_REGULARIZATION
from .strategies import StrategyKind, StrategySelector, UnsupportedStrategyError
from .validation import DIVERGENCE_THRESHOLD, LOSSY_MSE_THRESHOLD

logger = logging.getLogger(__name__)

ENV_PERMUTE = "PERMQUANT_PERMUTE"
ENV_STRATEGY = "PERMQUANT_STRATEGY"
ENV_CODEC = "PERMQUANT_CODEC"
ENV_VERBOSE = "PERMQUANT_VERBOSE"

DEFAULT_SKIP_PATTERNS: Tuple[str, ...] = ("embed_tokens", "norm")
DEFAULT_OUTPUT_DIR = Path("./quantized")


def env_flag(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class QuantizationConfig:
    """Settings for :func:`permquant.tools.quantize.quantize_checkpoint`."""

    strategy: StrategySelector = field(default_factory=StrategySelector)
    use_permutation: bool = False
    skip_patterns: Tuple[str, ...] = DEFAULT_SKIP_PATTERNS
    output_dir: Path = DEFAULT_OUTPUT_DIR
    codec: str = DEFAULT_CODEC
    weight_suffix: str = ".weight"
    attention_aware: bool = False
    qr_regularization: float = DEFAULT_REGULARIZATION
    lossy_threshold: float = LOSSY_MSE_THRESHOLD
    divergence_threshold: float = DIVERGENCE_THRESHOLD
    verbose: bool = False

    def __post_init__(self) -> None:
        self.output_dir = Path(self.output_dir)
        self.skip_patterns = tuple(self.skip_patterns)
        if isinstance(self.strategy, (str, StrategyKind)):
            self.strategy = (
                StrategySelector(kind=self.strategy)
                if isinstance(self.strategy, StrategyKind)
                else StrategySelector.parse(self.strategy)
            )

    @property
    def effective_strategy(self) -> StrategySelector:
        """The selector in force once the legacy ``attention_aware`` flag is applied."""

        if self.attention_aware:
            return StrategySelector(kind=StrategyKind.ATTENTION_AWARE)
        return self.strategy

    def is_target_weight(self, name: str) -> bool:
        if not name.endswith(self.weight_suffix):
            return False
        return not any(pattern in name for pattern in self.skip_patterns)

    def replace(self, **changes) -> "QuantizationConfig":
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, **overrides
    ) -> "QuantizationConfig":
        """Build a configuration from ``PERMQUANT_*`` variables.

        Unknown strategy names fall back to the energy ordering with a warning.
        Keyword ``overrides`` win over the environment.
        """

        env = os.environ if environ is None else environ
        values: dict = {}
        if ENV_PERMUTE in env:
            values["use_permutation"] = env_flag(env[ENV_PERMUTE])
        strategy_name = env.get(ENV_STRATEGY)
        if strategy_name:
            try:
                values["strategy"] = StrategySelector.parse(strategy_name)
            except UnsupportedStrategyError:
                logger.warning(
                    "Unknown %s=%r; using %s", ENV_STRATEGY, strategy_name, StrategyKind.ENERGY.value
                )
                values["strategy"] = StrategySelector()
        if env.get(ENV_CODEC):
            values["codec"] = env[ENV_CODEC].strip().lower()
        if ENV_VERBOSE in env:
            values["verbose"] = env_flag(env[ENV_VERBOSE])
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


__all__ = [
    "DEFAULT_OUTPUT_DIR",
    "DEFAULT_SKIP_PATTERNS",
    "ENV_CODEC",
    "ENV_PERMUTE",
    "ENV_STRATEGY",
    "ENV_VERBOSE",
    "QuantizationConfig",
    "env_flag",
]
