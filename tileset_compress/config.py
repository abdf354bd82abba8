from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Tuple

from .planner import OptimizationOptions

GLTF_TRANSFORM_ENV = "GLTF_TRANSFORM_BIN"
DEFAULT_GLTF_TRANSFORM = "gltf-transform"

# gltf-transform config module registering the `decompress` command.
DECOMPRESS_PLUGIN = Path(__file__).with_name("gltf_transform_decompress.mjs")

# ETC1S quality 125 / compression 1, Draco 16-bit positions at speed 3 (compression level 7).
DEFAULT_STEP_ARGS: Dict[str, Tuple[str, ...]] = {
    "etc1s": ("--quality", "125", "--compression", "1", "--power-of-two"),
    "draco": ("--quantize-position", "16", "--encode-speed", "3", "--decode-speed", "3"),
    "decompress": ("--config", str(DECOMPRESS_PLUGIN)),
}


@dataclass(frozen=True)
class TransformSettings:
    executable: str = DEFAULT_GLTF_TRANSFORM
    step_args: Dict[str, Tuple[str, ...]] = field(default_factory=lambda: dict(DEFAULT_STEP_ARGS))

    @classmethod
    def from_env(cls) -> "TransformSettings":
        return cls(executable=os.getenv(GLTF_TRANSFORM_ENV) or DEFAULT_GLTF_TRANSFORM)


@dataclass(frozen=True)
class JobConfig:
    """Everything a job needs, built once per run and shipped to every worker."""

    options: OptimizationOptions = field(default_factory=OptimizationOptions)
    transform: TransformSettings = field(default_factory=TransformSettings)
    unwrap_containers: bool = True
    dry_run: bool = False
    verbose: bool = False


def default_concurrency() -> int:
    # Leave one CPU for the coordinating process.
    return max(1, (os.cpu_count() or 1) - 1)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("PIL").setLevel(logging.INFO)
