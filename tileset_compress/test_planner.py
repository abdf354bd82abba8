#!/usr/bin/env python3
import unittest

from tileset_compress import planner
from tileset_compress._testing import FakeTransformer, make_jpeg, make_ktx2, make_png, make_scene
from tileset_compress.inspector import MESH_COMPRESSION_EXTENSION, TEXTURE_TRANSFORM_EXTENSION, inspect
from tileset_compress.planner import OptimizationOptions, OptimizationStep

BOTH = OptimizationOptions(mesh_compression=True, texture_compression=True)
DECOMPRESS = OptimizationOptions(structural=False, decompress=True)


class PlanTests(unittest.TestCase):
    def test_compressed_mesh_with_jpeg_textures_needs_only_texture_work(self) -> None:
        document = make_scene(
            images=[(make_jpeg(4, 4), "image/jpeg")],
            extensions=[MESH_COMPRESSION_EXTENSION],
        )
        steps = planner.plan(inspect(document), BOTH)

        self.assertIn(OptimizationStep.TEXTURE_COMPRESSION, steps)
        self.assertNotIn(OptimizationStep.MESH_COMPRESSION, steps)

    def test_fully_optimized_scene_plans_nothing(self) -> None:
        document = make_scene(
            images=[(make_ktx2(64, 64), "image/ktx2")],
            extensions=[MESH_COMPRESSION_EXTENSION, "KHR_texture_basisu"],
        )
        self.assertEqual(planner.plan(inspect(document), BOTH), [])

    def test_any_ktx2_texture_counts_as_compressed(self) -> None:
        document = make_scene(images=[(make_ktx2(64, 64), "image/ktx2"), (make_png(4, 4), "image/png")])
        self.assertNotIn(OptimizationStep.TEXTURE_COMPRESSION, planner.plan(inspect(document), BOTH))

    def test_structural_steps_precede_texture_then_mesh_compression(self) -> None:
        steps = planner.plan(inspect(make_scene(images=[(make_png(4, 4), "image/png")])), BOTH)
        self.assertEqual(
            steps,
            [
                OptimizationStep.DEDUP,
                OptimizationStep.FLATTEN,
                OptimizationStep.JOIN,
                OptimizationStep.TEXTURE_COMPRESSION,
                OptimizationStep.MESH_COMPRESSION,
            ],
        )

    def test_structural_steps_can_be_disabled(self) -> None:
        options = OptimizationOptions(mesh_compression=True, structural=False)
        self.assertEqual(planner.plan(inspect(make_scene()), options), [OptimizationStep.MESH_COMPRESSION])

    def test_disabled_options_plan_nothing(self) -> None:
        state = inspect(make_scene(images=[(make_png(4, 4), "image/png")]))
        self.assertEqual(planner.plan(state, OptimizationOptions()), [])
        self.assertEqual(
            planner.plan(state, OptimizationOptions(texture_compression=True)),
            list(planner.STRUCTURAL_STEPS) + [OptimizationStep.TEXTURE_COMPRESSION],
        )

    def test_scene_without_textures_gets_no_texture_step(self) -> None:
        state = inspect(make_scene())
        self.assertFalse(planner.needs_texture_compression(state))
        self.assertEqual(planner.plan(state, OptimizationOptions(texture_compression=True)), [])

    def test_scene_without_geometry_gets_no_mesh_step(self) -> None:
        state = inspect(make_scene(with_mesh=False, images=[(make_png(4, 4), "image/png")]))
        self.assertFalse(planner.needs_mesh_compression(state))
        self.assertEqual(planner.plan(state, OptimizationOptions(mesh_compression=True)), [])

    def test_plan_is_empty_after_applying_it(self) -> None:
        inputs = [
            make_scene(images=[(make_png(4, 4), "image/png")]),
            make_scene(images=[(make_jpeg(4, 4), "image/jpeg")], extensions=[MESH_COMPRESSION_EXTENSION]),
            make_scene(),
            make_scene(with_mesh=False),
        ]
        transformer = FakeTransformer()
        for document in inputs:
            steps = planner.plan(inspect(document), BOTH)
            for step in steps:
                document = transformer.apply(document, step)
            self.assertEqual(planner.plan(inspect(document), BOTH), [])


class DecompressPlanTests(unittest.TestCase):
    def test_compressed_or_transformed_scenes_plan_decompression(self) -> None:
        for extension in (MESH_COMPRESSION_EXTENSION, TEXTURE_TRANSFORM_EXTENSION):
            with self.subTest(extension=extension):
                state = inspect(make_scene(extensions=[extension]))
                self.assertEqual(planner.plan(state, DECOMPRESS), [OptimizationStep.DECOMPRESSION])

    def test_plain_scene_plans_nothing(self) -> None:
        state = inspect(make_scene(images=[(make_png(4, 4), "image/png")]))
        self.assertFalse(planner.needs_decompression(state))
        self.assertEqual(planner.plan(state, DECOMPRESS), [])

    def test_decompressed_scene_plans_nothing(self) -> None:
        document = make_scene(extensions=[MESH_COMPRESSION_EXTENSION, TEXTURE_TRANSFORM_EXTENSION])
        for step in planner.plan(inspect(document), DECOMPRESS):
            document = FakeTransformer().apply(document, step)
        self.assertEqual(document.extensions_used(), set())
        self.assertEqual(planner.plan(inspect(document), DECOMPRESS), [])

    def test_cannot_be_combined_with_compression(self) -> None:
        with self.assertRaises(ValueError):
            OptimizationOptions(decompress=True, mesh_compression=True)
        with self.assertRaises(ValueError):
            OptimizationOptions(decompress=True, texture_compression=True)


if __name__ == "__main__":
    unittest.main()
