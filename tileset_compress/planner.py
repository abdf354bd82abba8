from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Tuple

from .inspector import TARGET_TEXTURE_ENCODING, OptimizationState


class OptimizationStep(Enum):
    DEDUP = "dedup"
    FLATTEN = "flatten"
    JOIN = "join"
    TEXTURE_COMPRESSION = "ktx"
    MESH_COMPRESSION = "draco"
    DECOMPRESSION = "decompress"


# Compression operates on the deduplicated, flattened graph.
STRUCTURAL_STEPS: Tuple[OptimizationStep, ...] = (
    OptimizationStep.DEDUP,
    OptimizationStep.FLATTEN,
    OptimizationStep.JOIN,
)


@dataclass(frozen=True)
class OptimizationOptions:
    mesh_compression: bool = False
    texture_compression: bool = False
    structural: bool = True
    decompress: bool = False

    def __post_init__(self) -> None:
        if self.decompress and (self.mesh_compression or self.texture_compression):
            raise ValueError("decompress cannot be combined with mesh or texture compression")


def needs_mesh_compression(state: OptimizationState) -> bool:
    return not state.mesh_compressed and state.primitive_count > 0


def needs_texture_compression(state: OptimizationState) -> bool:
    if not state.textures:
        return False
    return TARGET_TEXTURE_ENCODING not in state.texture_formats


def needs_decompression(state: OptimizationState) -> bool:
    return state.mesh_compressed or state.texture_transformed


def plan(state: OptimizationState, options: OptimizationOptions) -> List[OptimizationStep]:
    """Ordered steps still missing from *state*; empty when nothing is left to do."""
    if options.decompress:
        return [OptimizationStep.DECOMPRESSION] if needs_decompression(state) else []

    compression: List[OptimizationStep] = []
    if options.texture_compression and needs_texture_compression(state):
        compression.append(OptimizationStep.TEXTURE_COMPRESSION)
    if options.mesh_compression and needs_mesh_compression(state):
        compression.append(OptimizationStep.MESH_COMPRESSION)

    if not compression:
        return []
    if options.structural:
        return list(STRUCTURAL_STEPS) + compression
    return compression
