"""Quantise the weight matrices of a safetensors checkpoint into 8-bit blocks.

Each eligible 2-D weight is optionally column-permuted by the configured
strategy, quantised row by row, checked against two probe products and
written to ``<output>/<tensor name><codec suffix>``. When a permutation was
applied its ``.perm`` sidecar is written next to the artefact.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..checkpoint import CheckpointReader, UnsupportedDTypeError, open_checkpoint
from ..codecs import BlockCodec, available_codecs, get_codec
from ..config import ENV_VERBOSE, QuantizationConfig
from ..formats import remove_permutation, write_artifact, write_permutation
from ..strategies import (
    LayerPermutationCache,
    PermutationStrategy,
    StrategyKind,
    StrategySelector,
    create_strategy,
)
from ..validation import ValidationReport, validate_quantization

logger = logging.getLogger(__name__)

LOG_FILENAME = "quantize.log"


@dataclass(frozen=True)
class ArtifactInfo:
    """Description of one tensor written by :func:`quantize_checkpoint`."""

    name: str
    path: Path
    rows: int
    k: int
    blocks_per_row: int
    bytes: int
    permutation_path: Optional[Path]


@dataclass(frozen=True)
class QuantizationResult:
    """Summary of a :func:`quantize_checkpoint` run."""

    source: Path
    output: Path
    strategy: Optional[str]
    codec: str
    quantized_tensors: int
    skipped_tensors: int
    total_time_seconds: float
    mse_stats: Tuple[Tuple[str, float, float], ...]
    artifacts: Tuple[ArtifactInfo, ...]
    log_path: Optional[Path]

    @property
    def total_bytes(self) -> int:
        return sum(info.bytes for info in self.artifacts)

    def to_dict(self) -> Dict[str, object]:
        return {
            "source": str(self.source),
            "output": str(self.output),
            "strategy": self.strategy,
            "codec": self.codec,
            "quantized_tensors": self.quantized_tensors,
            "skipped_tensors": self.skipped_tensors,
            "total_time_seconds": self.total_time_seconds,
            "log_path": str(self.log_path) if self.log_path is not None else None,
            "mse_stats": [
                {"name": name, "mse_uniform": uniform, "mse_gradient": gradient}
                for name, uniform, gradient in self.mse_stats
            ],
            "artifacts": [
                {
                    "name": info.name,
                    "path": str(info.path),
                    "rows": info.rows,
                    "k": info.k,
                    "blocks_per_row": info.blocks_per_row,
                    "bytes": info.bytes,
                    "permutation_path": (
                        str(info.permutation_path) if info.permutation_path is not None else None
                    ),
                }
                for info in self.artifacts
            ],
            "total_bytes": self.total_bytes,
        }


def format_summary(result: QuantizationResult) -> str:
    header = "Quantization Summary"
    lines = [header, "=" * len(header)]
    lines.append(f"Input   : {result.source}")
    lines.append(f"Output  : {result.output}")
    lines.append(f"Permute : {'on (' + result.strategy + ')' if result.strategy else 'off'}")
    lines.append(f"Codec   : {result.codec}")
    if result.log_path:
        lines.append(f"Log file: {result.log_path}")
    lines.append(
        f"Done in {result.total_time_seconds:.2f}s. "
        f"Quantized: {result.quantized_tensors}, skipped: {result.skipped_tensors}"
    )
    if result.mse_stats:
        lines.append("")
        lines.append("MSE Statistics:")
        for name, uniform, gradient in result.mse_stats:
            lines.append(f"  {name}: uniform={uniform:.6e}, gradient={gradient:.6e}")
    lines.append("")
    lines.append(f"Total payload bytes: {result.total_bytes}")
    return "\n".join(lines)


def render_summary(result: QuantizationResult, *, format: str = "table") -> str:
    normalized = format.lower()
    if normalized == "table":
        return format_summary(result)
    if normalized == "json":
        return json.dumps(result.to_dict(), indent=2, sort_keys=True)
    raise ValueError(f"Unsupported summary format: {format}")


def configure_console_logging(stream=None) -> Optional[logging.Handler]:
    """Install an INFO console handler on the root logger if it has none.

    The handler level is pinned to INFO; the package logger drops to DEBUG
    while a run log is open and only the file handler should see those records.
    """

    root = logging.getLogger()
    if root.handlers:
        return None
    logging.basicConfig(level=logging.INFO, stream=stream)
    handler = root.handlers[0]
    handler.setLevel(logging.INFO)
    return handler


def _skip_reason(
    name: str, shape: Tuple[int, ...], config: QuantizationConfig, codec: BlockCodec
) -> Optional[str]:
    if len(shape) != 2:
        return f"rank {len(shape)} tensor"
    if not config.is_target_weight(name):
        return "not a target weight"
    rows, k = shape
    if rows <= 0 or k <= 0:
        return f"empty tensor [{rows} x {k}]"
    if k % codec.block_width != 0:
        return f"k % {codec.block_width} != 0 [{rows} x {k}]"
    return None


def quantize_matrix(
    name: str,
    matrix: np.ndarray,
    strategy: Optional[PermutationStrategy],
    codec: BlockCodec,
) -> Tuple[np.ndarray, np.ndarray, Optional[np.ndarray]]:
    """Permute (when ``strategy`` is given) and quantise one matrix.

    Returns the matrix that was quantised, its blocks, and the permutation.
    """

    if strategy is not None:
        data, permutation = strategy.apply(matrix, name)
    else:
        data, permutation = matrix, None
    return data, codec.quantize_rows(data), permutation


def quantize_checkpoint(
    source: Path,
    config: QuantizationConfig,
    *,
    cache: LayerPermutationCache | None = None,
) -> QuantizationResult:
    """Quantise every eligible tensor in ``source`` according to ``config``."""

    source = Path(source).expanduser()
    output = Path(config.output_dir).expanduser()
    codec = get_codec(config.codec)
    selector = config.effective_strategy
    strategy: Optional[PermutationStrategy] = None
    if config.use_permutation:
        strategy = create_strategy(
            selector,
            cache=cache if cache is not None else LayerPermutationCache(),
            regularization=config.qr_regularization,
        )

    start = time.perf_counter()
    output.mkdir(parents=True, exist_ok=True)

    if config.verbose:
        configure_console_logging()

    log_path = output / LOG_FILENAME
    file_handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    package_logger = logging.getLogger("permquant")
    previous_level = package_logger.level
    package_logger.addHandler(file_handler)
    package_logger.setLevel(logging.DEBUG)

    quantized = 0
    skipped = 0
    mse_stats: List[Tuple[str, float, float]] = []
    artifacts: List[ArtifactInfo] = []

    try:
        logger.info("Input   : %s", source)
        logger.info("Output  : %s", output)
        logger.info("Permute : %s", "on" if strategy is not None else "off")
        if strategy is not None:
            logger.info("Strategy: %s", strategy.name)
        logger.info("Codec   : %s", codec.name)

        with open_checkpoint(source) as reader:
            logger.info("Tensors: %d", len(reader))
            for name in list(reader.names()):
                info, report = _process_tensor(reader, name, config, codec, strategy, output)
                if info is None:
                    skipped += 1
                    continue
                quantized += 1
                artifacts.append(info)
                mse_stats.append(report.as_tuple())
    except (ValueError, OSError, NotImplementedError) as exc:
        logger.exception("Quantization failed: %s", exc)
        raise
    finally:
        package_logger.removeHandler(file_handler)
        file_handler.close()
        package_logger.setLevel(previous_level)

    return QuantizationResult(
        source=source,
        output=output,
        strategy=strategy.name if strategy is not None else None,
        codec=codec.name,
        quantized_tensors=quantized,
        skipped_tensors=skipped,
        total_time_seconds=time.perf_counter() - start,
        mse_stats=tuple(mse_stats),
        artifacts=tuple(artifacts),
        log_path=log_path,
    )


def _process_tensor(
    reader: CheckpointReader,
    name: str,
    config: QuantizationConfig,
    codec: BlockCodec,
    strategy: Optional[PermutationStrategy],
    output: Path,
) -> Tuple[Optional[ArtifactInfo], Optional[ValidationReport]]:
    entry = reader.index[name]
    reason = _skip_reason(name, entry.shape, config, codec)
    if reason is not None:
        logger.debug("skip (%s): %s", reason, name)
        return None, None

    rows, k = entry.shape
    try:
        matrix = reader.load_f32(name)
    except UnsupportedDTypeError as exc:
        logger.info("skip (%s): %s", exc, name)
        return None, None

    logger.info("quantizing %s (%d x %d)", name, rows, k)
    data, blocks, permutation = quantize_matrix(name, matrix, strategy, codec)
    report = validate_quantization(
        name,
        data,
        blocks,
        codec,
        divergence_threshold=config.divergence_threshold,
        lossy_threshold=config.lossy_threshold,
    )

    out_path = output / f"{name}{codec.suffix}"
    written = write_artifact(out_path, rows, k, blocks, codec)
    perm_path = None
    if permutation is not None:
        perm_path = write_permutation(out_path, permutation)
    elif remove_permutation(out_path):
        logger.info("removed stale permutation sidecar for %s", name)

    return (
        ArtifactInfo(
            name=name,
            path=out_path,
            rows=rows,
            k=k,
            blocks_per_row=codec.blocks_per_row(k),
            bytes=written,
            permutation_path=perm_path,
        ),
        report,
    )


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Quantise the 2-D weights of a safetensors checkpoint into 8-bit blocks, "
            "optionally reordering columns to reduce quantisation error."
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--source", type=Path, required=True, help="Input .safetensors file")
    parser.add_argument(
        "--output", type=Path, required=True, help="Directory for the quantised artefacts"
    )
    parser.add_argument(
        "--permute",
        dest="permute",
        action="store_true",
        default=None,
        help="Enable column permutation (can also set PERMQUANT_PERMUTE=1)",
    )
    parser.add_argument(
        "--no-permute", dest="permute", action="store_false", help="Disable column permutation"
    )
    parser.add_argument(
        "--strategy",
        choices=[kind.value for kind in StrategyKind],
        default=None,
        help="Permutation strategy (can also set PERMQUANT_STRATEGY)",
    )
    parser.add_argument("--learning-rate", type=float, default=0.01, help=argparse.SUPPRESS)
    parser.add_argument("--iterations", type=int, default=1000, help=argparse.SUPPRESS)
    parser.add_argument(
        "--codec",
        choices=available_codecs(),
        default=None,
        help="Block codec (can also set PERMQUANT_CODEC)",
    )
    parser.add_argument(
        "--skip-pattern",
        dest="skip_patterns",
        action="append",
        default=None,
        help="Substring of tensor names to leave unquantised (repeatable)",
    )
    parser.add_argument(
        "--verbose",
        dest="verbose",
        action="store_true",
        default=None,
        help=f"Enable verbose logging (can also set {ENV_VERBOSE}=1)",
    )
    parser.add_argument("--quiet", dest="verbose", action="store_false", help="Disable verbose logging")
    parser.add_argument(
        "--no-summary",
        dest="print_summary",
        action="store_false",
        help="Do not print the run summary",
    )
    parser.add_argument(
        "--summary-format",
        choices=("table", "json"),
        default="table",
        help="Format to use when rendering the run summary",
    )
    parser.add_argument(
        "--summary-output", type=Path, help="Optional path to write the run summary to"
    )
    parser.set_defaults(print_summary=True)

    args = parser.parse_args(argv)
    args.source = args.source.expanduser()
    args.output = args.output.expanduser()
    if args.summary_output is not None:
        args.summary_output = args.summary_output.expanduser()
    if args.learning_rate <= 0:
        parser.error("--learning-rate must be positive")
    if args.iterations <= 0:
        parser.error("--iterations must be a positive integer")
    return args


def build_config(args: argparse.Namespace, environ=None) -> QuantizationConfig:
    strategy = None
    if args.strategy is not None:
        strategy = StrategySelector(
            kind=StrategyKind(args.strategy),
            learning_rate=args.learning_rate,
            iterations=args.iterations,
        )
    return QuantizationConfig.from_env(
        environ,
        use_permutation=args.permute,
        strategy=strategy,
        codec=args.codec,
        skip_patterns=tuple(args.skip_patterns) if args.skip_patterns else None,
        output_dir=args.output,
        verbose=args.verbose,
    )


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    config = build_config(args)
    if config.verbose:
        configure_console_logging()

    try:
        result = quantize_checkpoint(args.source, config)
    except (ValueError, OSError, NotImplementedError) as exc:
        message = str(exc) or type(exc).__name__
        print(f"permquant: {message}", file=sys.stderr)
        raise SystemExit(1) from exc

    rendered = render_summary(result, format=args.summary_format)
    if args.summary_output is not None:
        args.summary_output.parent.mkdir(parents=True, exist_ok=True)
        text = rendered if rendered.endswith("\n") else rendered + "\n"
        args.summary_output.write_text(text, encoding="utf-8")
    if args.print_summary:
        print(rendered)


if __name__ == "__main__":
    main()
