"""
One unit of batch work: optimize a single tile asset on disk.

    READING -> DECODING -> INSPECTING -> PLANNING -> TRANSFORMING -> ENCODING -> WRITING

A job never raises for the failures it knows about; they come back as a FAILED
`JobResult` naming the stage and the failure kind. Output is written only once
every transform succeeded, and a container input is deleted only after its
replacement payload is safely on disk.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from . import container
from .config import JobConfig
from .inspector import inspect
from .planner import OptimizationStep, plan
from .scene import PayloadFormat, SceneDocument
from .transforms import CliTransformer, TransformError

PAYLOAD_EXTENSION = ".glb"
ELIGIBLE_EXTENSIONS = (container.CONTAINER_EXTENSION, ".glb", ".gltf")


class AssetKind(Enum):
    CONTAINER = "container"
    BARE_PAYLOAD = "payload"

    @classmethod
    def for_path(cls, path: Path) -> "AssetKind":
        if path.suffix.lower() == container.CONTAINER_EXTENSION:
            return cls.CONTAINER
        return cls.BARE_PAYLOAD


class JobState(Enum):
    READING = "reading"
    DECODING = "decoding"
    INSPECTING = "inspecting"
    PLANNING = "planning"
    TRANSFORMING = "transforming"
    ENCODING = "encoding"
    WRITING = "writing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FailureKind(Enum):
    NOT_FOUND = "not_found"
    MALFORMED_CONTAINER = "malformed_container"
    MALFORMED_PAYLOAD = "malformed_payload"
    TRANSFORM_ERROR = "transform_error"
    WRITE_ERROR = "write_error"
    WORKER_CRASHED = "worker_crashed"


class JobOutcome(Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


STEP_LABELS = {
    OptimizationStep.TEXTURE_COMPRESSION: "KTX",
    OptimizationStep.MESH_COMPRESSION: "Draco",
}


@dataclass(frozen=True)
class JobResult:
    path: str
    outcome: JobOutcome
    elapsed_ms: float
    applied_steps: Tuple[OptimizationStep, ...] = ()
    planned_steps: Tuple[OptimizationStep, ...] = ()
    output_path: Optional[str] = None
    error_kind: Optional[FailureKind] = None
    failed_stage: Optional[JobState] = None
    error_detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is not JobOutcome.FAILED

    def describe(self) -> str:
        seconds = self.elapsed_ms / 1000.0
        if self.outcome is JobOutcome.FAILED:
            stage = self.failed_stage.value if self.failed_stage else "unknown stage"
            kind = self.error_kind.value if self.error_kind else "error"
            return f"failed while {stage} ({kind}) after {seconds:.2f}s: {self.error_detail}"

        parts = [f"Execution time: {seconds:.2f}s."]
        for step, label in STEP_LABELS.items():
            parts.append(f"{label} {'Applied' if step in self.applied_steps else 'Not Applied'}.")
        if not self.applied_steps and self.planned_steps:
            parts.append("Would apply: " + ", ".join(step.value for step in self.planned_steps) + ".")
        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "outcome": self.outcome.value,
            "elapsed_ms": round(self.elapsed_ms, 3),
            "applied_steps": [step.value for step in self.applied_steps],
            "planned_steps": [step.value for step in self.planned_steps],
            "output_path": self.output_path,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "error_detail": self.error_detail,
        }


class JobFailure(Exception):
    def __init__(self, kind: FailureKind, stage: JobState, detail: str):
        super().__init__(detail)
        self.kind = kind
        self.stage = stage
        self.detail = detail


def output_path_for(path: Path, config: JobConfig) -> Path:
    if AssetKind.for_path(path) is AssetKind.CONTAINER and config.unwrap_containers:
        return path.with_suffix(PAYLOAD_EXTENSION)
    return path


def failed_result(
    path: Path,
    kind: FailureKind,
    stage: Optional[JobState],
    detail: str,
    elapsed_ms: float,
) -> JobResult:
    return JobResult(
        path=str(path),
        outcome=JobOutcome.FAILED,
        elapsed_ms=elapsed_ms,
        error_kind=kind,
        failed_stage=stage,
        error_detail=detail,
    )


def _write_replacing(target: Path, data: bytes) -> None:
    temp_path = target.with_name(target.name + ".tmp")
    try:
        temp_path.write_bytes(data)
        os.replace(temp_path, target)
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise


def _run(
    path: Path,
    config: JobConfig,
    transformer: Any,
) -> Tuple[List[OptimizationStep], List[OptimizationStep], Optional[Path]]:
    kind = AssetKind.for_path(path)

    try:
        data = path.read_bytes()
    except OSError as exc:
        raise JobFailure(FailureKind.NOT_FOUND, JobState.READING, str(exc)) from exc

    header: Optional[container.ContainerHeader] = None
    side_tables: Optional[container.SideTables] = None
    if kind is AssetKind.CONTAINER:
        try:
            header, side_tables, payload = container.decode(data)
        except container.MalformedContainer as exc:
            raise JobFailure(FailureKind.MALFORMED_CONTAINER, JobState.DECODING, str(exc)) from exc
        payload_format = PayloadFormat.GLB
    else:
        payload = data
        payload_format = PayloadFormat.for_path(path)

    try:
        document = SceneDocument.read(payload, payload_format, base_dir=path.parent)
    except ValueError as exc:  # MalformedPayload or undecodable data URIs
        raise JobFailure(FailureKind.MALFORMED_PAYLOAD, JobState.DECODING, str(exc)) from exc

    state = inspect(document)
    logging.debug(
        "%s: draco=%s textures=%s triangles=%d",
        path,
        state.mesh_compressed,
        sorted(encoding.value for encoding in state.texture_formats),
        state.triangle_count,
    )
    steps = plan(state, config.options)

    if config.dry_run:
        return [], steps, None

    applied: List[OptimizationStep] = []
    for step in steps:
        try:
            document = transformer.apply(document, step)
        except TransformError as exc:
            raise JobFailure(FailureKind.TRANSFORM_ERROR, JobState.TRANSFORMING, str(exc)) from exc
        applied.append(step)

    target = output_path_for(path, config)
    out_bytes = document.write(payload_format)
    if header is not None and side_tables is not None and not config.unwrap_containers:
        out_bytes = container.encode(header, side_tables, out_bytes)

    try:
        _write_replacing(target, out_bytes)
    except OSError as exc:
        raise JobFailure(FailureKind.WRITE_ERROR, JobState.WRITING, str(exc)) from exc

    if target != path:
        try:
            path.unlink()
        except OSError as exc:
            raise JobFailure(
                FailureKind.WRITE_ERROR,
                JobState.WRITING,
                f"wrote {target.name} but could not remove stale input: {exc}",
            ) from exc

    return applied, steps, target


def process_asset(path: Path, config: JobConfig, transformer: Any = None) -> JobResult:
    if transformer is None:
        transformer = CliTransformer(config.transform)

    start = time.perf_counter()
    try:
        applied, planned, target = _run(path, config, transformer)
    except JobFailure as failure:
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        return failed_result(path, failure.kind, failure.stage, failure.detail, elapsed_ms)

    elapsed_ms = (time.perf_counter() - start) * 1000.0
    return JobResult(
        path=str(path),
        outcome=JobOutcome.SUCCESS if target is not None else JobOutcome.SKIPPED,
        elapsed_ms=elapsed_ms,
        applied_steps=tuple(applied),
        planned_steps=tuple(planned),
        output_path=str(target) if target is not None else None,
    )
