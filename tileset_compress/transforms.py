from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional

from .config import TransformSettings
from .planner import OptimizationStep
from .scene import MalformedPayload, SceneDocument

STEP_COMMANDS = {
    OptimizationStep.DEDUP: "dedup",
    OptimizationStep.FLATTEN: "flatten",
    OptimizationStep.JOIN: "join",
    OptimizationStep.TEXTURE_COMPRESSION: "etc1s",
    OptimizationStep.MESH_COMPRESSION: "draco",
    OptimizationStep.DECOMPRESSION: "decompress",
}

STDERR_TAIL_CHARS = 2000


class TransformError(RuntimeError):
    def __init__(self, step: OptimizationStep, message: str):
        super().__init__(f"{step.value}: {message}")
        self.step = step


class CliTransformer:
    """Runs each optimization step through the `gltf-transform` command line tool."""

    def __init__(self, settings: TransformSettings):
        self.settings = settings

    def resolve_executable(self) -> Optional[str]:
        return shutil.which(self.settings.executable)

    def available(self) -> bool:
        return self.resolve_executable() is not None

    def command(self, step: OptimizationStep, input_path: Path, output_path: Path) -> List[str]:
        name = STEP_COMMANDS[step]
        cmd = [self.settings.executable, name, str(input_path), str(output_path)]
        cmd.extend(self.settings.step_args.get(name, ()))
        return cmd

    def apply(self, document: SceneDocument, step: OptimizationStep) -> SceneDocument:
        with tempfile.TemporaryDirectory(prefix="tileset-compress-") as temp_dir:
            input_path = Path(temp_dir) / "input.glb"
            output_path = Path(temp_dir) / "output.glb"
            input_path.write_bytes(document.write_glb())

            cmd = self.command(step, input_path, output_path)
            logging.debug("Executing: %s", " ".join(cmd))
            try:
                completed = subprocess.run(cmd, check=False, capture_output=True, text=True)
            except OSError as exc:
                raise TransformError(step, f"cannot execute {self.settings.executable!r}: {exc}") from exc

            if completed.returncode != 0:
                stderr = (completed.stderr or completed.stdout or "").strip()
                raise TransformError(
                    step,
                    f"exit code {completed.returncode}: {stderr[-STDERR_TAIL_CHARS:]}",
                )
            if not output_path.is_file():
                raise TransformError(step, "tool reported success but wrote no output")

            try:
                return SceneDocument.from_glb(output_path.read_bytes())
            except MalformedPayload as exc:
                raise TransformError(step, f"tool produced an unreadable GLB: {exc}") from exc
