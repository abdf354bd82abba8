#!/usr/bin/env python3
import os
import stat
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from tileset_compress import config
from tileset_compress._testing import make_scene
from tileset_compress.config import TransformSettings
from tileset_compress.planner import OptimizationStep
from tileset_compress.transforms import CliTransformer, TransformError


def _script(directory: Path, name: str, body: str) -> str:
    path = directory / name
    path.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


class SettingsTests(unittest.TestCase):
    def test_executable_from_environment(self) -> None:
        with mock.patch.dict(os.environ, {config.GLTF_TRANSFORM_ENV: "/opt/bin/gltf-transform"}):
            self.assertEqual(TransformSettings.from_env().executable, "/opt/bin/gltf-transform")
        with mock.patch.dict(os.environ, {config.GLTF_TRANSFORM_ENV: ""}):
            self.assertEqual(TransformSettings.from_env().executable, config.DEFAULT_GLTF_TRANSFORM)

    def test_default_concurrency_leaves_one_cpu(self) -> None:
        with mock.patch("os.cpu_count", return_value=8):
            self.assertEqual(config.default_concurrency(), 7)
        with mock.patch("os.cpu_count", return_value=None):
            self.assertEqual(config.default_concurrency(), 1)


class CommandTests(unittest.TestCase):
    def test_compression_steps_carry_their_arguments(self) -> None:
        transformer = CliTransformer(TransformSettings(executable="gltf-transform"))

        draco = transformer.command(OptimizationStep.MESH_COMPRESSION, Path("in.glb"), Path("out.glb"))
        ktx = transformer.command(OptimizationStep.TEXTURE_COMPRESSION, Path("in.glb"), Path("out.glb"))
        dedup = transformer.command(OptimizationStep.DEDUP, Path("in.glb"), Path("out.glb"))

        self.assertEqual(draco[:4], ["gltf-transform", "draco", "in.glb", "out.glb"])
        self.assertIn("--quantize-position", draco)
        self.assertEqual(ktx[:2], ["gltf-transform", "etc1s"])
        self.assertIn("--quality", ktx)
        self.assertEqual(dedup, ["gltf-transform", "dedup", "in.glb", "out.glb"])

    def test_decompress_loads_the_bundled_config_module(self) -> None:
        transformer = CliTransformer(TransformSettings(executable="gltf-transform"))

        command = transformer.command(OptimizationStep.DECOMPRESSION, Path("in.glb"), Path("out.glb"))

        self.assertEqual(
            command,
            ["gltf-transform", "decompress", "in.glb", "out.glb", "--config", str(config.DECOMPRESS_PLUGIN)],
        )
        self.assertTrue(config.DECOMPRESS_PLUGIN.is_file())

    def test_missing_executable_is_unavailable(self) -> None:
        transformer = CliTransformer(TransformSettings(executable="no-such-gltf-transform-binary"))
        self.assertFalse(transformer.available())
        with self.assertRaises(TransformError) as ctx:
            transformer.apply(make_scene(), OptimizationStep.DEDUP)
        self.assertEqual(ctx.exception.step, OptimizationStep.DEDUP)


@unittest.skipUnless(os.name == "posix", "uses /bin/sh stand-ins for gltf-transform")
class ApplyTests(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.bin_dir = Path(self._temp_dir.name)

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def test_output_is_read_back(self) -> None:
        # $1 is the sub-command, $2 the input, $3 the output.
        executable = _script(self.bin_dir, "copy-tool", 'cp "$2" "$3"')
        document = make_scene(extensions=["KHR_materials_unlit"])

        result = CliTransformer(TransformSettings(executable=executable)).apply(
            document, OptimizationStep.FLATTEN
        )

        self.assertEqual(result.payload, document.payload)
        self.assertEqual(result.binary, document.binary)

    def test_non_zero_exit_reports_stderr(self) -> None:
        executable = _script(self.bin_dir, "failing-tool", "echo 'draco encoder exploded' >&2\nexit 3")

        with self.assertRaises(TransformError) as ctx:
            CliTransformer(TransformSettings(executable=executable)).apply(
                make_scene(), OptimizationStep.MESH_COMPRESSION
            )

        self.assertIn("exit code 3", str(ctx.exception))
        self.assertIn("draco encoder exploded", str(ctx.exception))

    def test_missing_output_is_an_error(self) -> None:
        executable = _script(self.bin_dir, "lazy-tool", "exit 0")
        with self.assertRaises(TransformError):
            CliTransformer(TransformSettings(executable=executable)).apply(make_scene(), OptimizationStep.JOIN)

    def test_unreadable_output_is_an_error(self) -> None:
        executable = _script(self.bin_dir, "garbage-tool", 'echo garbage > "$3"')
        with self.assertRaises(TransformError):
            CliTransformer(TransformSettings(executable=executable)).apply(make_scene(), OptimizationStep.JOIN)


if __name__ == "__main__":
    unittest.main()
