from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from enum import Enum
from io import BytesIO
from typing import FrozenSet, Optional, Tuple

from PIL import Image

from .scene import SceneDocument

MESH_COMPRESSION_EXTENSION = "KHR_draco_mesh_compression"
TEXTURE_TRANSFORM_EXTENSION = "KHR_texture_transform"

KTX1_IDENTIFIER = bytes([0xAB, 0x4B, 0x54, 0x58, 0x20, 0x31, 0x31, 0xBB, 0x0D, 0x0A, 0x1A, 0x0A])
KTX2_IDENTIFIER = bytes([0xAB, 0x4B, 0x54, 0x58, 0x20, 0x32, 0x30, 0xBB, 0x0D, 0x0A, 0x1A, 0x0A])

# (width offset, height offset) of the little-endian uint32 pixel sizes.
KTX1_SIZE_OFFSETS = (36, 40)
KTX2_SIZE_OFFSETS = (20, 24)


class TextureEncoding(Enum):
    JPEG = "JPEG"
    PNG = "PNG"
    WEBP = "WEBP"
    KTX1 = "KTX"
    KTX2 = "KTX2"
    UNKNOWN = "unknown"


TARGET_TEXTURE_ENCODING = TextureEncoding.KTX2

ENCODING_BY_MIME = {
    "image/jpeg": TextureEncoding.JPEG,
    "image/jpg": TextureEncoding.JPEG,
    "image/png": TextureEncoding.PNG,
    "image/webp": TextureEncoding.WEBP,
    "image/ktx": TextureEncoding.KTX1,
    "image/ktx2": TextureEncoding.KTX2,
}

ENCODING_BY_PIL_FORMAT = {
    "JPEG": TextureEncoding.JPEG,
    "PNG": TextureEncoding.PNG,
    "WEBP": TextureEncoding.WEBP,
}


@dataclass(frozen=True)
class TextureInfo:
    encoding: TextureEncoding
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def resolution(self) -> str:
        width = "unknown" if self.width is None else str(self.width)
        height = "unknown" if self.height is None else str(self.height)
        return f"{width}x{height}"


@dataclass(frozen=True)
class OptimizationState:
    mesh_compressed: bool = False
    texture_formats: FrozenSet[TextureEncoding] = frozenset()
    textures: Tuple[TextureInfo, ...] = field(default_factory=tuple)
    primitive_count: int = 0
    triangle_count: int = 0
    texture_transformed: bool = False


def read_ktx_header(data: bytes) -> Optional[Tuple[TextureEncoding, int, int]]:
    """Return (encoding, width, height) when *data* starts with a KTX 1 or KTX 2 identifier."""
    signature = bytes(data[:12])
    if signature == KTX1_IDENTIFIER:
        encoding, offsets = TextureEncoding.KTX1, KTX1_SIZE_OFFSETS
    elif signature == KTX2_IDENTIFIER:
        encoding, offsets = TextureEncoding.KTX2, KTX2_SIZE_OFFSETS
    else:
        return None

    width_offset, height_offset = offsets
    if len(data) < height_offset + 4:
        raise ValueError(f"{encoding.value} header truncated ({len(data)} bytes)")
    (width,) = struct.unpack_from("<I", data, width_offset)
    (height,) = struct.unpack_from("<I", data, height_offset)
    return encoding, width, height


def classify_texture(mime_type: Optional[str], data: Optional[bytes]) -> TextureInfo:
    encoding = ENCODING_BY_MIME.get(mime_type.lower()) if mime_type else None
    if not data:
        return TextureInfo(encoding or TextureEncoding.UNKNOWN)

    try:
        ktx = read_ktx_header(data)
    except ValueError as exc:
        logging.debug("Texture dimensions unavailable: %s", exc)
        return TextureInfo(encoding or TextureEncoding.UNKNOWN)

    if ktx is not None:
        ktx_encoding, width, height = ktx
        if encoding is None or encoding in (TextureEncoding.KTX1, TextureEncoding.KTX2):
            encoding = ktx_encoding
        return TextureInfo(encoding, width, height)

    try:
        with Image.open(BytesIO(data)) as img:
            width, height = img.size
            pil_format = img.format
    except Exception as exc:  # noqa: BLE001
        logging.debug("Texture dimensions unavailable: %s", exc)
        return TextureInfo(encoding or TextureEncoding.UNKNOWN)

    if encoding is None:
        encoding = ENCODING_BY_PIL_FORMAT.get(pil_format or "", TextureEncoding.UNKNOWN)
    return TextureInfo(encoding, width, height)


def inspect(document: SceneDocument) -> OptimizationState:
    textures = tuple(classify_texture(ref.mime_type, ref.image_bytes) for ref in document.textures())
    extensions = document.extensions_used()
    return OptimizationState(
        mesh_compressed=MESH_COMPRESSION_EXTENSION in extensions,
        texture_formats=frozenset(info.encoding for info in textures),
        textures=textures,
        primitive_count=document.primitive_count(),
        triangle_count=document.triangle_count(),
        texture_transformed=TEXTURE_TRANSFORM_EXTENSION in extensions,
    )
