"""Single-file mesh formats loaded with trimesh.

Each adapter returns a ``LoadedMesh`` with float32 (N, 3) positions and
uint32 (M, 3) indices. STL and OBJ files with several bodies are merged into
one mesh; a glTF/GLB scene contributes only its first mesh, found depth-first
from the scene root. PLY scans may be bare point clouds without faces.
"""

import io
import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional

import numpy as np
import trimesh

from ingest_errors import InvalidGeometry, UnsupportedFormat

logger = logging.getLogger(__name__)

CONTAINER_FORMAT = "3mf"
SINGLE_FILE_FORMATS = ("stl", "obj", "ply", "gltf", "glb")
SUPPORTED_FORMATS = (CONTAINER_FORMAT,) + SINGLE_FILE_FORMATS


@dataclass
class LoadedMesh:
    positions: np.ndarray
    indices: np.ndarray
    source_format: str
    body_count: int = 1


def detect_format(file_name: str) -> str:
    """Lower-case extension of ``file_name`` if supported.

    Raises:
        UnsupportedFormat: extension missing or not in ``SUPPORTED_FORMATS``
    """
    suffix = PurePosixPath(file_name or "").suffix.lower().lstrip(".")
    if suffix not in SUPPORTED_FORMATS:
        shown = f".{suffix}" if suffix else "(none)"
        raise UnsupportedFormat(
            f"Unsupported file format: {shown}. Supported: {', '.join(SUPPORTED_FORMATS)}"
        )
    return suffix


def _as_arrays(geometry) -> LoadedMesh:
    vertices = np.asarray(getattr(geometry, "vertices", np.zeros((0, 3))), dtype=np.float32).reshape(-1, 3)
    faces = getattr(geometry, "faces", None)
    if faces is None:
        indices = np.zeros((0, 3), dtype=np.uint32)
    else:
        indices = np.asarray(faces, dtype=np.uint32).reshape(-1, 3)
    return LoadedMesh(positions=vertices, indices=indices, source_format="")


def _concatenate_scene(scene: trimesh.Scene, file_type: str):
    """Merge every mesh of a scene, with scene transforms applied."""
    meshes = []
    for node in scene.graph.nodes_geometry:
        transform, geometry_name = scene.graph[node]
        geometry = scene.geometry.get(geometry_name)
        if not isinstance(geometry, trimesh.Trimesh):
            continue
        placed = geometry.copy()
        placed.apply_transform(transform)
        meshes.append(placed)
    if not meshes:
        raise InvalidGeometry(f"{file_type.upper()} file contains no geometry")
    if len(meshes) == 1:
        return meshes[0], 1
    return trimesh.util.concatenate(meshes), len(meshes)


def first_mesh_depth_first(scene: trimesh.Scene) -> Optional[trimesh.Trimesh]:
    """First mesh reached by a depth-first walk of the scene graph, with its world transform."""
    children = {}
    for edge in scene.graph.to_edgelist():
        children.setdefault(edge[0], []).append(edge[1])

    base = scene.graph.base_frame
    stack = list(reversed(children.get(base, [])))
    visited = {base}
    while stack:
        node = stack.pop()
        if node in visited:
            continue
        visited.add(node)

        transform, geometry_name = scene.graph.get(node)
        if geometry_name is not None:
            geometry = scene.geometry.get(geometry_name)
            if isinstance(geometry, trimesh.Trimesh) and len(geometry.faces) > 0:
                mesh = geometry.copy()
                mesh.apply_transform(transform)
                return mesh

        # Reverse so the first child is visited first.
        stack.extend(reversed(children.get(node, [])))
    return None


def _load(data: bytes, file_type: str):
    try:
        return trimesh.load(io.BytesIO(data), file_type=file_type, process=False)
    except Exception as e:
        raise InvalidGeometry(f"Failed to parse {file_type.upper()} file: {e}") from e


def load_triangle_soup(data: bytes) -> LoadedMesh:
    """Binary or ASCII STL."""
    loaded = _load(data, "stl")
    body_count = 1
    if isinstance(loaded, trimesh.Scene):
        loaded, body_count = _concatenate_scene(loaded, "stl")
    mesh = _as_arrays(loaded)
    mesh.body_count = body_count
    return mesh


def load_face_list(data: bytes) -> LoadedMesh:
    """Wavefront OBJ; groups and objects are merged."""
    loaded = _load(data, "obj")
    body_count = 1
    if isinstance(loaded, trimesh.Scene):
        loaded, body_count = _concatenate_scene(loaded, "obj")
    mesh = _as_arrays(loaded)
    mesh.body_count = body_count
    return mesh


def load_point_scan(data: bytes) -> LoadedMesh:
    """PLY, either a triangle mesh or a point cloud."""
    loaded = _load(data, "ply")
    if isinstance(loaded, trimesh.Scene):
        loaded, _ = _concatenate_scene(loaded, "ply")
    return _as_arrays(loaded)


def load_scene_graph(data: bytes, file_type: str) -> LoadedMesh:
    """glTF/GLB; only the first mesh in depth-first order is kept."""
    loaded = _load(data, file_type)
    if isinstance(loaded, trimesh.Scene):
        mesh = first_mesh_depth_first(loaded)
        if mesh is None:
            raise InvalidGeometry(f"No valid mesh found in {file_type.upper()} scene")
        logger.debug(f"Scene has {len(loaded.geometry)} geometries; using the first mesh")
        return _as_arrays(mesh)
    return _as_arrays(loaded)


def load_single_file(data: bytes, source_format: str) -> LoadedMesh:
    """Dispatch on a format returned by ``detect_format``."""
    if source_format == "stl":
        mesh = load_triangle_soup(data)
    elif source_format == "obj":
        mesh = load_face_list(data)
    elif source_format == "ply":
        mesh = load_point_scan(data)
    elif source_format in ("gltf", "glb"):
        mesh = load_scene_graph(data, source_format)
    else:
        raise UnsupportedFormat(f"No single-file adapter for .{source_format}")

    mesh.source_format = source_format
    logger.info(
        f"Loaded {source_format.upper()}: {len(mesh.positions)} vertices, "
        f"{len(mesh.indices)} triangles"
        + (f" from {mesh.body_count} bodies" if mesh.body_count > 1 else "")
    )
    return mesh
