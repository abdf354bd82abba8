"""Unwrap and compress 3D Tiles assets (b3dm / glb / gltf) in bulk."""

__version__ = "0.1.0"
