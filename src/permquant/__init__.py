"""Column permutation and 8-bit block quantisation for checkpoint weights."""

from __future__ import annotations

import importlib
from typing import Any

__version__ = "0.1.0"

_EXPORTS = {
    "QuantizationConfig": "permquant.config",
    "StrategyKind": "permquant.strategies",
    "StrategySelector": "permquant.strategies",
    "LayerPermutationCache": "permquant.strategies",
    "create_strategy": "permquant.strategies",
    "get_codec": "permquant.codecs",
    "dequantize_tensor": "permquant.formats",
    "load_quantized_tensor": "permquant.formats",
    "quantize_checkpoint": "permquant.tools.quantize",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    value = getattr(importlib.import_module(module_name), name)
    globals()[name] = value
    return value


def __dir__() -> list[str]:
    return sorted(list(__all__) + list(globals().keys()))
