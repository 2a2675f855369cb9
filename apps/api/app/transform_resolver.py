"""Decode 3MF build-item transforms and pick the placement of the mesh.

3MF stores an affine transform as 12 numbers ``m00 m01 m02 m10 m11 m12 m20
m21 m22 m30 m31 m32`` applied to row vectors. Here everything is converted to
a conventional 4x4 column-vector matrix: column ``c`` of the linear part is
``values[3c:3c+3]`` and the translation is ``values[9:12]``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, TYPE_CHECKING

import numpy as np

from models import AffineTransform, Vec3

if TYPE_CHECKING:
    from model_document import BuildItem

logger = logging.getLogger(__name__)

_ORTHONORMAL_TOLERANCE = 1e-6
_EPS = 1e-12


def parse_transform_values(transform_str: Optional[str]) -> Optional[List[float]]:
    """Parse a transform attribute into 12 values, or ``None`` if absent/malformed."""
    if not transform_str or not transform_str.strip():
        return None

    try:
        values = [float(x) for x in transform_str.split()]
    except ValueError:
        return None

    if not all(math.isfinite(v) for v in values):
        return None

    if len(values) == 12:
        return values

    # Full 4x4 in the same row-vector layout; drop the last column.
    if len(values) == 16:
        return [
            values[0], values[1], values[2],
            values[4], values[5], values[6],
            values[8], values[9], values[10],
            values[12], values[13], values[14],
        ]

    return None


def transform_matrix(values: Sequence[float]) -> np.ndarray:
    """Build the 4x4 column-vector matrix implied by 12 3MF values."""
    m = np.eye(4)
    for col in range(3):
        m[0:3, col] = values[3 * col:3 * col + 3]
    m[0:3, 3] = values[9:12]
    return m


def matrix_to_values(m: np.ndarray) -> List[float]:
    """Inverse of ``transform_matrix``."""
    out: List[float] = []
    for col in range(3):
        out.extend(float(v) for v in m[0:3, col])
    out.extend(float(v) for v in m[0:3, 3])
    return out


def rotation_matrix_from_euler(x: float, y: float, z: float) -> np.ndarray:
    """Rotation for XYZ-order Euler angles (``Rx @ Ry @ Rz``)."""
    cx, sx = math.cos(x), math.sin(x)
    cy, sy = math.cos(y), math.sin(y)
    cz, sz = math.cos(z), math.sin(z)
    rx = np.array([[1.0, 0.0, 0.0], [0.0, cx, -sx], [0.0, sx, cx]])
    ry = np.array([[cy, 0.0, sy], [0.0, 1.0, 0.0], [-sy, 0.0, cy]])
    rz = np.array([[cz, -sz, 0.0], [sz, cz, 0.0], [0.0, 0.0, 1.0]])
    return rx @ ry @ rz


def euler_from_rotation_matrix(r: np.ndarray) -> Tuple[float, float, float]:
    """XYZ-order Euler angles of a proper rotation matrix."""
    m13 = float(np.clip(r[0, 2], -1.0, 1.0))
    y = math.asin(m13)
    if abs(m13) < 0.9999999:
        x = math.atan2(-r[1, 2], r[2, 2])
        z = math.atan2(-r[0, 1], r[0, 0])
    else:
        # Gimbal lock: fold all of the remaining rotation into X.
        x = math.atan2(r[2, 1], r[1, 1])
        z = 0.0
    return _clean(x), _clean(y), _clean(z)


def _clean(v: float) -> float:
    return 0.0 if abs(v) < _EPS else float(v)


def _best_fit_rotation(linear: np.ndarray) -> np.ndarray:
    """Closest proper rotation to ``linear`` (polar decomposition via SVD)."""
    u, _, vt = np.linalg.svd(linear)
    r = u @ vt
    if np.linalg.det(r) < 0:
        u[:, -1] = -u[:, -1]
        r = u @ vt
    return r


def decompose_matrix(m: np.ndarray) -> AffineTransform:
    """Split a 4x4 affine matrix into translation, XYZ Euler rotation and scale.

    Non-orthonormal linear parts (shear, degenerate scale) do not raise: the
    closest rotation is used and the scale is read back from it.
    """
    linear = np.array(m[0:3, 0:3], dtype=np.float64)
    translation = m[0:3, 3]

    scale = np.linalg.norm(linear, axis=0)
    if np.linalg.det(linear) < 0:
        scale[0] = -scale[0]

    rotation = None
    if np.all(np.abs(scale) > _EPS):
        candidate = linear / scale
        if np.allclose(candidate.T @ candidate, np.eye(3), atol=_ORTHONORMAL_TOLERANCE) \
                and np.linalg.det(candidate) > 0:
            rotation = candidate

    if rotation is None:
        logger.debug("Transform is not a pure rotation/scale; using best-fit decomposition")
        rotation = _best_fit_rotation(linear)
        scale = np.diag(rotation.T @ linear).copy()

    rx, ry, rz = euler_from_rotation_matrix(rotation)
    return AffineTransform(
        position=Vec3(x=_clean(translation[0]), y=_clean(translation[1]), z=_clean(translation[2])),
        rotation=Vec3(x=rx, y=ry, z=rz),
        scale=Vec3(x=_clean(scale[0]), y=_clean(scale[1]), z=_clean(scale[2])),
        matrix=matrix_to_values(m),
    )


def compose_matrix(transform: AffineTransform) -> np.ndarray:
    """4x4 matrix for ``translate * rotate * scale``."""
    m = np.eye(4)
    r = rotation_matrix_from_euler(*transform.rotation.as_tuple())
    m[0:3, 0:3] = r * np.array(transform.scale.as_tuple())
    m[0:3, 3] = transform.position.as_tuple()
    return m


def decode_transform(transform_str: Optional[str]) -> AffineTransform:
    """Decode a 3MF transform attribute; absent or malformed input gives identity."""
    values = parse_transform_values(transform_str)
    if values is None:
        if transform_str and transform_str.strip():
            logger.warning(f"Malformed transform {transform_str!r}; using identity")
        return AffineTransform()
    return decompose_matrix(transform_matrix(values))


def apply_to_bounds(bmin: Sequence[float], bmax: Sequence[float],
                    transform: AffineTransform) -> Tuple[List[float], List[float]]:
    """Transform an AABB and return the AABB enclosing its eight corners."""
    m = transform_matrix(transform.matrix)
    corners = np.array([[x, y, z, 1.0]
                        for x in (bmin[0], bmax[0])
                        for y in (bmin[1], bmax[1])
                        for z in (bmin[2], bmax[2])])
    moved = (m @ corners.T).T[:, 0:3]
    return moved.min(axis=0).tolist(), moved.max(axis=0).tolist()


def apply_to_points(points: np.ndarray, transform: AffineTransform) -> np.ndarray:
    """Map (N, 3) object-space points into the build frame."""
    m = transform_matrix(transform.matrix)
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return pts @ m[0:3, 0:3].T + m[0:3, 3]


@dataclass
class PlacementResolution:
    """Which build item places the mesh, and how it was chosen.

    ``match`` is ``"matched"``, ``"first_item"`` (no item references the
    geometry object) or ``"identity"`` (no build items at all).
    """
    transform: AffineTransform
    match: str
    build_item: Optional["BuildItem"] = None
    diagnostic: Optional[str] = None


def resolve_placement(build_items: Sequence["BuildItem"],
                      geometry_object_id: Optional[str],
                      wrapper_ids: Sequence[str] = ()) -> PlacementResolution:
    """Use the transform of the build item that references the geometry-bearing object.

    ``wrapper_ids`` are objects that include the geometry object as a
    component; an item placing one of them is accepted when no item places
    the geometry object directly. The first build item is only used as a
    last resort, and that case is reported distinctly.
    """
    if not build_items:
        return PlacementResolution(transform=AffineTransform(), match="identity")

    if geometry_object_id is not None:
        for candidate_id in [geometry_object_id, *wrapper_ids]:
            for item in build_items:
                if item.object_id == candidate_id:
                    logger.info(f"Placement from build item for object {item.object_id}")
                    return PlacementResolution(transform=item.transform, match="matched", build_item=item)

    first = build_items[0]
    message = (
        f"No build item references geometry object {geometry_object_id!r}; "
        f"falling back to first build item (object {first.object_id!r})"
    )
    logger.warning(message)
    return PlacementResolution(transform=first.transform, match="first_item",
                               build_item=first, diagnostic=message)
