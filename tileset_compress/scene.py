"""
Minimal glTF 2.0 scene document: enough to read and write GLB / glTF payloads,
list the declared extensions, and reach texture image bytes.

Geometry and texture compression are delegated to an external tool
(see `transforms.py`); this module never decodes meshes.
"""

from __future__ import annotations

import base64
import binascii
import copy
import json
import logging
import struct
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple
from urllib.parse import unquote, unquote_to_bytes

JSON_CHUNK_TYPE = 0x4E4F534A
BIN_CHUNK_TYPE = 0x004E4942
GLTF_MAGIC = 0x46546C67

MIME_BY_EXT = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".ktx": "image/ktx",
    ".ktx2": "image/ktx2",
}

# Extensions that point a texture at an alternative image source.
TEXTURE_SOURCE_EXTENSIONS = ("KHR_texture_basisu", "EXT_texture_webp", "EXT_texture_avif")

TRIANGLES_MODE = 4
TRIANGLE_STRIP_MODE = 5
TRIANGLE_FAN_MODE = 6


class MalformedPayload(ValueError):
    pass


class PayloadFormat(Enum):
    GLB = "glb"
    GLTF = "gltf"

    @classmethod
    def for_path(cls, path: Path) -> "PayloadFormat":
        return cls.GLTF if path.suffix.lower() == ".gltf" else cls.GLB


@dataclass(frozen=True)
class TextureRef:
    texture_index: int
    image_index: Optional[int]
    mime_type: Optional[str]
    image_bytes: Optional[bytes]


def align4(value: int) -> int:
    return (value + 3) & ~3


def guess_mime_from_name(name: str) -> Optional[str]:
    return MIME_BY_EXT.get(Path(name).suffix.lower())


def decode_data_uri(uri: str) -> Tuple[bytes, Optional[str]]:
    """Return the bytes and media type (None when absent) of a `data:` URI."""
    if not uri.startswith("data:"):
        raise MalformedPayload(f"not a data URI: {uri[:32]!r}")

    header, separator, body = uri[5:].partition(",")
    if not separator:
        raise MalformedPayload("data URI has no ',' before its content")

    media_type, *params = header.split(";")
    mime_type = media_type if "/" in media_type else None
    if not any(param.lower() == "base64" for param in params):
        return unquote_to_bytes(body), mime_type

    try:
        return base64.b64decode(body, validate=True), mime_type
    except binascii.Error as exc:
        raise MalformedPayload(f"data URI has invalid base64 content: {exc}") from exc


def load_glb_payload(data: bytes) -> Tuple[Dict[str, Any], bytes]:
    if len(data) < 20:
        raise MalformedPayload("GLB too small")

    magic, version, total_length = struct.unpack_from("<III", data, 0)
    if magic != GLTF_MAGIC:
        raise MalformedPayload("Invalid GLB magic")
    if version != 2:
        raise MalformedPayload(f"Unsupported GLB version: {version}")
    if total_length > len(data):
        raise MalformedPayload("GLB is truncated")

    offset = 12
    json_chunk: Optional[bytes] = None
    bin_chunk = b""

    while offset + 8 <= total_length:
        chunk_len, chunk_type = struct.unpack_from("<II", data, offset)
        offset += 8
        chunk_end = offset + chunk_len
        if chunk_end > total_length:
            raise MalformedPayload("GLB chunk exceeds file size")

        chunk_data = data[offset:chunk_end]
        offset = chunk_end

        if chunk_type == JSON_CHUNK_TYPE and json_chunk is None:
            json_chunk = chunk_data
        elif chunk_type == BIN_CHUNK_TYPE and not bin_chunk:
            bin_chunk = chunk_data

    if json_chunk is None:
        raise MalformedPayload("GLB missing JSON chunk")

    payload = _parse_json_root(json_chunk.decode("utf-8").rstrip(" \t\r\n\x00"))
    return payload, bytes(bin_chunk)


def build_glb(payload: Dict[str, Any], binary_blob: bytes) -> bytes:
    json_bytes = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    json_pad = align4(len(json_bytes)) - len(json_bytes)
    if json_pad:
        json_bytes += b" " * json_pad

    bin_pad = align4(len(binary_blob)) - len(binary_blob)
    if bin_pad:
        binary_blob += b"\x00" * bin_pad

    total_length = 12 + 8 + len(json_bytes)
    if binary_blob:
        total_length += 8 + len(binary_blob)

    out = bytearray()
    out += struct.pack("<III", GLTF_MAGIC, 2, total_length)
    out += struct.pack("<II", len(json_bytes), JSON_CHUNK_TYPE)
    out += json_bytes
    if binary_blob:
        out += struct.pack("<II", len(binary_blob), BIN_CHUNK_TYPE)
        out += binary_blob
    return bytes(out)


def _parse_json_root(text: str) -> Dict[str, Any]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedPayload(f"invalid glTF JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedPayload("glTF JSON root is not an object")
    return payload


def append_buffer_view(
    buffer_views: List[Dict[str, Any]],
    binary_blob: bytearray,
    data: bytes,
) -> int:
    aligned_offset = align4(len(binary_blob))
    if aligned_offset > len(binary_blob):
        binary_blob.extend(b"\x00" * (aligned_offset - len(binary_blob)))

    byte_offset = len(binary_blob)
    binary_blob.extend(data)

    buffer_views.append(
        {
            "buffer": 0,
            "byteOffset": byte_offset,
            "byteLength": len(data),
        }
    )
    return len(buffer_views) - 1


def _read_buffer(index: int, buffer_obj: Dict[str, Any], base_dir: Optional[Path]) -> bytes:
    uri = buffer_obj.get("uri")
    if not isinstance(uri, str) or not uri:
        raise MalformedPayload(f"buffer[{index}] has no uri in a .gltf document")

    if uri.startswith("data:"):
        data, _mime = decode_data_uri(uri)
    else:
        if base_dir is None:
            raise MalformedPayload(f"buffer[{index}] references external file {uri!r} without a base directory")
        buffer_path = base_dir / unquote(uri.replace("\\", "/"))
        try:
            data = buffer_path.read_bytes()
        except OSError as exc:
            raise MalformedPayload(f"buffer[{index}] cannot be read from {uri!r}: {exc}") from exc

    declared = buffer_obj.get("byteLength")
    if isinstance(declared, int) and 0 <= declared < len(data):
        data = data[:declared]
    return data


class SceneDocument:
    """A glTF JSON payload plus its single embedded binary buffer."""

    def __init__(self, payload: Dict[str, Any], binary: bytes = b"") -> None:
        self.payload = payload
        self.binary = binary

    @classmethod
    def read(cls, data: bytes, fmt: PayloadFormat, base_dir: Optional[Path] = None) -> "SceneDocument":
        if fmt is PayloadFormat.GLB:
            return cls.from_glb(data)
        return cls.from_gltf(data, base_dir)

    @classmethod
    def from_glb(cls, data: bytes) -> "SceneDocument":
        payload, binary = load_glb_payload(data)
        buffers = payload.get("buffers")
        if isinstance(buffers, list) and buffers and isinstance(buffers[0], dict):
            declared = buffers[0].get("byteLength")
            if isinstance(declared, int) and 0 <= declared < len(binary):
                binary = binary[:declared]  # drop chunk padding
        return cls(payload, binary)

    @classmethod
    def from_gltf(cls, data: bytes, base_dir: Optional[Path] = None) -> "SceneDocument":
        """Load glTF JSON and pack every buffer and URI image into one embedded buffer."""
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise MalformedPayload(f"glTF document is not UTF-8: {exc}") from exc
        payload = _parse_json_root(text)

        blob = bytearray()
        buffers = payload.get("buffers")
        buffer_offsets: List[int] = []
        if isinstance(buffers, list):
            for index, buffer_obj in enumerate(buffers):
                if not isinstance(buffer_obj, dict):
                    raise MalformedPayload(f"buffer[{index}] is not an object")
                chunk = _read_buffer(index, buffer_obj, base_dir)
                blob.extend(b"\x00" * (align4(len(blob)) - len(blob)))
                buffer_offsets.append(len(blob))
                blob.extend(chunk)

        buffer_views = payload.get("bufferViews")
        if not isinstance(buffer_views, list):
            buffer_views = []
        for view_index, view in enumerate(buffer_views):
            if not isinstance(view, dict):
                raise MalformedPayload(f"bufferView[{view_index}] is not an object")
            buffer_index = view.get("buffer", 0)
            if not isinstance(buffer_index, int) or not 0 <= buffer_index < len(buffer_offsets):
                raise MalformedPayload(f"bufferView[{view_index}] references invalid buffer {buffer_index}")
            view["buffer"] = 0
            view["byteOffset"] = int(view.get("byteOffset", 0)) + buffer_offsets[buffer_index]

        images = payload.get("images")
        if isinstance(images, list):
            for image_index, image_obj in enumerate(images):
                if not isinstance(image_obj, dict):
                    continue
                uri = image_obj.get("uri")
                if not isinstance(uri, str) or not uri:
                    continue
                try:
                    if uri.startswith("data:"):
                        raw, uri_mime = decode_data_uri(uri)
                    elif base_dir is not None:
                        rel_uri = unquote(uri.replace("\\", "/"))
                        raw = (base_dir / rel_uri).read_bytes()
                        uri_mime = guess_mime_from_name(rel_uri)
                    else:
                        continue
                except (OSError, ValueError) as exc:
                    logging.warning("image[%d] %r left external: %s", image_index, uri[:64], exc)
                    continue

                if "bufferViews" not in payload:
                    payload["bufferViews"] = buffer_views
                image_obj["bufferView"] = append_buffer_view(buffer_views, blob, raw)
                image_obj.pop("uri", None)
                mime_type = image_obj.get("mimeType") or uri_mime
                if mime_type:
                    image_obj["mimeType"] = mime_type

        if blob:
            payload["buffers"] = [{"byteLength": len(blob)}]
        else:
            payload.pop("buffers", None)
        return cls(payload, bytes(blob))

    def write(self, fmt: PayloadFormat) -> bytes:
        if fmt is PayloadFormat.GLB:
            return self.write_glb()
        return self.write_gltf()

    def _payload_for_output(self) -> Dict[str, Any]:
        payload = copy.deepcopy(self.payload)
        buffers = payload.get("buffers")
        if self.binary:
            if not isinstance(buffers, list) or not buffers or not isinstance(buffers[0], dict):
                payload["buffers"] = [{}]
                buffers = payload["buffers"]
            buffers[0]["byteLength"] = len(self.binary)
            buffers[0].pop("uri", None)
        return payload

    def write_glb(self) -> bytes:
        return build_glb(self._payload_for_output(), self.binary)

    def write_gltf(self) -> bytes:
        payload = self._payload_for_output()
        if self.binary:
            encoded = base64.b64encode(self.binary).decode("ascii")
            payload["buffers"][0]["uri"] = f"data:application/octet-stream;base64,{encoded}"
        return (json.dumps(payload, indent=2, ensure_ascii=False) + "\n").encode("utf-8")

    def extensions_used(self) -> Set[str]:
        used = self.payload.get("extensionsUsed")
        if not isinstance(used, list):
            return set()
        return {name for name in used if isinstance(name, str)}

    def _list(self, key: str) -> List[Any]:
        value = self.payload.get(key)
        return value if isinstance(value, list) else []

    def _accessor_count(self, index: Any) -> int:
        accessors = self._list("accessors")
        if not isinstance(index, int) or not 0 <= index < len(accessors):
            return 0
        accessor = accessors[index]
        if not isinstance(accessor, dict):
            return 0
        count = accessor.get("count", 0)
        return count if isinstance(count, int) else 0

    def _primitives(self) -> List[Dict[str, Any]]:
        primitives: List[Dict[str, Any]] = []
        for mesh in self._list("meshes"):
            if not isinstance(mesh, dict):
                continue
            for primitive in mesh.get("primitives") or []:
                if isinstance(primitive, dict):
                    primitives.append(primitive)
        return primitives

    def primitive_count(self) -> int:
        return len(self._primitives())

    def triangle_count(self) -> int:
        total = 0
        for primitive in self._primitives():
            mode = primitive.get("mode", TRIANGLES_MODE)
            if "indices" in primitive:
                count = self._accessor_count(primitive["indices"])
            else:
                attributes = primitive.get("attributes")
                position = attributes.get("POSITION") if isinstance(attributes, dict) else None
                count = self._accessor_count(position)
            if mode == TRIANGLES_MODE:
                total += count // 3
            elif mode in (TRIANGLE_STRIP_MODE, TRIANGLE_FAN_MODE):
                total += max(0, count - 2)
        return total

    def _image_bytes(self, image_obj: Dict[str, Any]) -> Optional[bytes]:
        view_index = image_obj.get("bufferView")
        if isinstance(view_index, int):
            views = self._list("bufferViews")
            if not 0 <= view_index < len(views) or not isinstance(views[view_index], dict):
                return None
            view = views[view_index]
            byte_offset = int(view.get("byteOffset", 0))
            byte_length = int(view.get("byteLength", 0))
            end = byte_offset + byte_length
            if byte_offset < 0 or byte_length <= 0 or end > len(self.binary):
                return None
            return self.binary[byte_offset:end]

        uri = image_obj.get("uri")
        if isinstance(uri, str) and uri.startswith("data:"):
            try:
                return decode_data_uri(uri)[0]
            except ValueError:
                return None
        return None

    def textures(self) -> List[TextureRef]:
        images = self._list("images")
        refs: List[TextureRef] = []
        for texture_index, texture in enumerate(self._list("textures")):
            if not isinstance(texture, dict):
                refs.append(TextureRef(texture_index, None, None, None))
                continue

            source = texture.get("source")
            extensions = texture.get("extensions")
            if isinstance(extensions, dict):
                for name in TEXTURE_SOURCE_EXTENSIONS:
                    ext = extensions.get(name)
                    if isinstance(ext, dict) and isinstance(ext.get("source"), int):
                        source = ext["source"]
                        break

            if not isinstance(source, int) or not 0 <= source < len(images) or not isinstance(images[source], dict):
                refs.append(TextureRef(texture_index, None, None, None))
                continue

            image_obj = images[source]
            mime_type = image_obj.get("mimeType")
            uri = image_obj.get("uri")
            if not mime_type and isinstance(uri, str):
                if uri.startswith("data:"):
                    header = uri[5:].split(",", 1)[0]
                    mime_type = header.split(";")[0] or None
                else:
                    mime_type = guess_mime_from_name(uri)
            refs.append(TextureRef(texture_index, source, mime_type, self._image_bytes(image_obj)))
        return refs
