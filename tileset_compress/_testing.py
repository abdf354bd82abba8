"""Fixtures shared by the unittest modules: in-memory tiles and stand-in workers."""

from __future__ import annotations

import copy
import os
import struct
import time
from io import BytesIO
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from PIL import Image

from . import container
from .config import JobConfig
from .inspector import (
    KTX1_IDENTIFIER,
    KTX2_IDENTIFIER,
    MESH_COMPRESSION_EXTENSION,
    TEXTURE_TRANSFORM_EXTENSION,
)
from .job import JobResult, process_asset
from .planner import OptimizationStep
from .scene import SceneDocument, append_buffer_view
from .transforms import TransformError


def make_png(width: int, height: int) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (width, height), (40, 80, 120)).save(buffer, format="PNG")
    return buffer.getvalue()


def make_jpeg(width: int, height: int) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (width, height), (200, 10, 10)).save(buffer, format="JPEG")
    return buffer.getvalue()


def make_ktx1(width: int, height: int) -> bytes:
    header = bytearray(64)
    header[0:12] = KTX1_IDENTIFIER
    struct.pack_into("<I", header, 12, 0x04030201)  # endianness marker
    struct.pack_into("<I", header, 36, width)
    struct.pack_into("<I", header, 40, height)
    return bytes(header)


def make_ktx2(width: int, height: int) -> bytes:
    header = bytearray(80)
    header[0:12] = KTX2_IDENTIFIER
    struct.pack_into("<I", header, 20, width)
    struct.pack_into("<I", header, 24, height)
    return bytes(header)


def make_scene(
    images: Sequence[Tuple[bytes, Optional[str]]] = (),
    extensions: Iterable[str] = (),
    with_mesh: bool = True,
) -> SceneDocument:
    payload = {"asset": {"version": "2.0"}, "bufferViews": []}
    blob = bytearray()

    if with_mesh:
        positions = struct.pack("<9f", 0, 0, 0, 1, 0, 0, 0, 1, 0)
        indices = struct.pack("<3H", 0, 1, 2)
        position_view = append_buffer_view(payload["bufferViews"], blob, positions)
        index_view = append_buffer_view(payload["bufferViews"], blob, indices)
        payload["accessors"] = [
            {
                "bufferView": position_view,
                "componentType": 5126,
                "count": 3,
                "type": "VEC3",
                "min": [0, 0, 0],
                "max": [1, 1, 0],
            },
            {"bufferView": index_view, "componentType": 5123, "count": 3, "type": "SCALAR"},
        ]
        payload["meshes"] = [{"primitives": [{"attributes": {"POSITION": 0}, "indices": 1}]}]
        payload["nodes"] = [{"mesh": 0}]
        payload["scenes"] = [{"nodes": [0]}]
        payload["scene"] = 0

    if images:
        payload["images"] = []
        payload["textures"] = []
        for image_bytes, mime_type in images:
            image_obj = {"bufferView": append_buffer_view(payload["bufferViews"], blob, image_bytes)}
            if mime_type:
                image_obj["mimeType"] = mime_type
            payload["images"].append(image_obj)
            payload["textures"].append({"source": len(payload["images"]) - 1})

    extensions = list(extensions)
    if extensions:
        payload["extensionsUsed"] = extensions

    payload["buffers"] = [{"byteLength": len(blob)}]
    return SceneDocument(payload, bytes(blob))


def make_container(
    payload: bytes,
    feature_json: bytes = b"",
    feature_binary: bytes = b"",
    batch_json: bytes = b"",
    batch_binary: bytes = b"",
    magic: int = container.CONTAINER_MAGIC,
) -> bytes:
    header = container.ContainerHeader(
        magic=magic,
        version=1,
        total_byte_length=0,
        feature_table_json_length=len(feature_json),
        feature_table_binary_length=len(feature_binary),
        batch_table_json_length=len(batch_json),
        batch_table_binary_length=len(batch_binary),
    )
    side_tables = container.SideTables(
        feature_table=feature_json + feature_binary,
        batch_table=batch_json + batch_binary,
    )
    return container.encode(header, side_tables, payload)


class FakeTransformer:
    """Marks the scene the way gltf-transform would, without running it."""

    def __init__(self, fail_on: Iterable[OptimizationStep] = ()):
        self.fail_on = set(fail_on)
        self.calls: List[OptimizationStep] = []

    def apply(self, document: SceneDocument, step: OptimizationStep) -> SceneDocument:
        self.calls.append(step)
        if step in self.fail_on:
            raise TransformError(step, "simulated failure")

        payload = copy.deepcopy(document.payload)
        binary = bytearray(document.binary)
        if step is OptimizationStep.MESH_COMPRESSION:
            used = payload.setdefault("extensionsUsed", [])
            if MESH_COMPRESSION_EXTENSION not in used:
                used.append(MESH_COMPRESSION_EXTENSION)
        elif step is OptimizationStep.TEXTURE_COMPRESSION:
            views = payload.setdefault("bufferViews", [])
            for image_obj in payload.get("images", []):
                image_obj["bufferView"] = append_buffer_view(views, binary, make_ktx2(256, 256))
                image_obj["mimeType"] = "image/ktx2"
            used = payload.setdefault("extensionsUsed", [])
            if "KHR_texture_basisu" not in used:
                used.append("KHR_texture_basisu")
        elif step is OptimizationStep.DECOMPRESSION:
            for key in ("extensionsUsed", "extensionsRequired"):
                if key in payload:
                    payload[key] = [
                        name
                        for name in payload[key]
                        if name not in (MESH_COMPRESSION_EXTENSION, TEXTURE_TRANSFORM_EXTENSION)
                    ]
        return SceneDocument(payload, bytes(binary))


def write_tile(path: Path, document: SceneDocument, as_container: bool = False) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = document.write_glb()
    if as_container:
        data = make_container(data, feature_json=b'{"BATCH_LENGTH":0}  ')
    path.write_bytes(data)
    return path


# Worker stand-ins. Module level so child processes can import them by name.

def fake_worker(path: Path, config: JobConfig) -> JobResult:
    fail_on = list(OptimizationStep) if "fail" in path.name else []
    return process_asset(path, config, transformer=FakeTransformer(fail_on=fail_on))


def crashing_worker(path: Path, config: JobConfig) -> JobResult:
    if "crash" in path.name:
        os._exit(3)
    return fake_worker(path, config)


def raising_worker(path: Path, config: JobConfig) -> JobResult:
    if "boom" in path.name:
        raise RuntimeError("codec exploded")
    return fake_worker(path, config)


def sleeping_worker(path: Path, config: JobConfig) -> JobResult:
    if "slow" in path.name:
        time.sleep(60)
    return fake_worker(path, config)
