from __future__ import annotations

import json
import struct
from pathlib import Path
from typing import Dict, Tuple

import numpy as np
from safetensors.numpy import save_file

ATTENTION_ROLES = ("q", "k", "v", "o")


def attention_name(layer: int, role: str) -> str:
    return f"model.layers.{layer}.self_attn.{role}_proj.weight"


def random_matrix(rng: np.random.Generator, rows: int, cols: int) -> np.ndarray:
    return rng.uniform(-1.0, 1.0, size=(rows, cols)).astype(np.float32)


def build_checkpoint(
    path: Path, *, rows: int = 64, k: int = 256, seed: int = 0
) -> Dict[str, np.ndarray]:
    """Write a small llama-style checkpoint and return the tensors written."""

    rng = np.random.default_rng(seed)
    tensors: Dict[str, np.ndarray] = {}
    for role in ATTENTION_ROLES:
        tensors[attention_name(0, role)] = random_matrix(rng, rows, k)
    tensors["model.layers.0.mlp.up_proj.weight"] = random_matrix(rng, rows, k).astype(np.float16)
    # Skipped: name pattern, rank, suffix, odd width and integer payload.
    tensors["model.embed_tokens.weight"] = random_matrix(rng, rows, k)
    tensors["model.norm.weight"] = random_matrix(rng, 1, k).reshape(k)
    tensors["model.layers.0.mlp.up_proj.bias"] = random_matrix(rng, 1, rows).reshape(rows)
    tensors["model.layers.0.mlp.odd_proj.weight"] = random_matrix(rng, rows, 100)
    tensors["model.layers.0.mlp.index_proj.weight"] = rng.integers(
        -5, 5, size=(rows, k), dtype=np.int32
    )
    save_file(tensors, str(path))
    return tensors


EXPECTED_QUANTIZED = 5
EXPECTED_SKIPPED = 5


def write_raw_safetensors(path: Path, entries: Dict[str, Tuple[str, Tuple[int, ...], bytes]]) -> None:
    """Write a safetensors file by hand so BF16 payloads can be produced."""

    header: Dict[str, object] = {}
    payload = bytearray()
    for name, (dtype, shape, data) in entries.items():
        start = len(payload)
        payload.extend(data)
        header[name] = {"dtype": dtype, "shape": list(shape), "data_offsets": [start, len(payload)]}
    header_bytes = json.dumps(header, separators=(",", ":")).encode("utf-8")
    header_bytes += b" " * ((-len(header_bytes)) % 8)
    path.write_bytes(struct.pack("<Q", len(header_bytes)) + header_bytes + bytes(payload))


def to_bf16_bytes(values: np.ndarray) -> bytes:
    raw = np.asarray(values, dtype=np.float32).view(np.uint32)
    return (raw >> 16).astype("<u2").tobytes()
