#!/usr/bin/env python3
import unittest

from tileset_compress import inspector
from tileset_compress._testing import make_jpeg, make_ktx1, make_ktx2, make_png, make_scene
from tileset_compress.inspector import TextureEncoding


class KtxHeaderTests(unittest.TestCase):
    def test_ktx2_dimensions_come_from_offsets_20_and_24(self) -> None:
        self.assertEqual(inspector.read_ktx_header(make_ktx2(1024, 512)), (TextureEncoding.KTX2, 1024, 512))

    def test_ktx1_dimensions_come_from_offsets_36_and_40(self) -> None:
        self.assertEqual(inspector.read_ktx_header(make_ktx1(64, 128)), (TextureEncoding.KTX1, 64, 128))

    def test_other_signatures_are_not_ktx(self) -> None:
        self.assertIsNone(inspector.read_ktx_header(make_png(1, 1)))
        self.assertIsNone(inspector.read_ktx_header(b""))

    def test_truncated_header_raises(self) -> None:
        with self.assertRaises(ValueError):
            inspector.read_ktx_header(make_ktx2(8, 8)[:22])


class ClassifyTextureTests(unittest.TestCase):
    def test_ktx2_texture(self) -> None:
        info = inspector.classify_texture("image/ktx2", make_ktx2(1024, 512))
        self.assertEqual(info, inspector.TextureInfo(TextureEncoding.KTX2, 1024, 512))
        self.assertEqual(info.resolution, "1024x512")

    def test_png_dimensions_via_pillow(self) -> None:
        self.assertEqual(
            inspector.classify_texture("image/png", make_png(32, 16)),
            inspector.TextureInfo(TextureEncoding.PNG, 32, 16),
        )

    def test_declared_mime_wins_over_detected_format(self) -> None:
        info = inspector.classify_texture("image/png", make_jpeg(8, 8))
        self.assertEqual(info.encoding, TextureEncoding.PNG)
        self.assertEqual((info.width, info.height), (8, 8))

    def test_missing_mime_is_sniffed(self) -> None:
        self.assertEqual(inspector.classify_texture(None, make_jpeg(5, 3)).encoding, TextureEncoding.JPEG)
        self.assertEqual(inspector.classify_texture(None, make_ktx1(4, 4)).encoding, TextureEncoding.KTX1)

    def test_ktx_signature_overrides_ktx_mime(self) -> None:
        info = inspector.classify_texture("image/ktx", make_ktx2(2, 2))
        self.assertEqual(info.encoding, TextureEncoding.KTX2)

    def test_undecodable_bytes_keep_mime_and_unknown_size(self) -> None:
        info = inspector.classify_texture("image/webp", b"not an image at all")
        self.assertEqual(info, inspector.TextureInfo(TextureEncoding.WEBP))
        self.assertEqual(info.resolution, "unknownxunknown")

    def test_nothing_known_is_unknown(self) -> None:
        self.assertEqual(inspector.classify_texture(None, None).encoding, TextureEncoding.UNKNOWN)
        self.assertEqual(inspector.classify_texture("image/bmp", b"\x00" * 4).encoding, TextureEncoding.UNKNOWN)


class InspectTests(unittest.TestCase):
    def test_uncompressed_scene(self) -> None:
        state = inspector.inspect(make_scene(images=[(make_png(4, 4), "image/png")]))

        self.assertFalse(state.mesh_compressed)
        self.assertEqual(state.texture_formats, frozenset({TextureEncoding.PNG}))
        self.assertEqual(state.textures, (inspector.TextureInfo(TextureEncoding.PNG, 4, 4),))
        self.assertEqual(state.primitive_count, 1)
        self.assertEqual(state.triangle_count, 1)

    def test_draco_extension_marks_mesh_compressed(self) -> None:
        state = inspector.inspect(make_scene(extensions=[inspector.MESH_COMPRESSION_EXTENSION]))
        self.assertTrue(state.mesh_compressed)
        self.assertEqual(state.textures, ())
        self.assertFalse(state.texture_transformed)

    def test_texture_transform_extension_is_detected(self) -> None:
        state = inspector.inspect(make_scene(extensions=[inspector.TEXTURE_TRANSFORM_EXTENSION]))
        self.assertTrue(state.texture_transformed)
        self.assertFalse(state.mesh_compressed)

    def test_mixed_texture_encodings(self) -> None:
        document = make_scene(images=[(make_ktx2(256, 256), "image/ktx2"), (make_jpeg(4, 4), "image/jpeg")])
        state = inspector.inspect(document)
        self.assertEqual(state.texture_formats, frozenset({TextureEncoding.KTX2, TextureEncoding.JPEG}))


if __name__ == "__main__":
    unittest.main()
