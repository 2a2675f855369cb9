"""Placeholder mesh returned when a file yields no usable geometry."""

import math
from typing import Tuple

import numpy as np

TORUS_KNOT_RADIUS = 15.0
TORUS_KNOT_TUBE = 5.0
TORUS_KNOT_TUBULAR_SEGMENTS = 100
TORUS_KNOT_RADIAL_SEGMENTS = 16
TORUS_KNOT_P = 2
TORUS_KNOT_Q = 3


def _knot_point(u: float, p: int, q: int, radius: float) -> np.ndarray:
    cu, su = math.cos(u), math.sin(u)
    qu_over_p = q / p * u
    cs = math.cos(qu_over_p)
    return np.array([
        radius * (2 + cs) * 0.5 * cu,
        radius * (2 + cs) * su * 0.5,
        radius * math.sin(qu_over_p) * 0.5,
    ])


def torus_knot(radius: float = TORUS_KNOT_RADIUS,
               tube: float = TORUS_KNOT_TUBE,
               tubular_segments: int = TORUS_KNOT_TUBULAR_SEGMENTS,
               radial_segments: int = TORUS_KNOT_RADIAL_SEGMENTS,
               p: int = TORUS_KNOT_P,
               q: int = TORUS_KNOT_Q) -> Tuple[np.ndarray, np.ndarray]:
    """(p, q) torus knot as float32 (N, 3) positions and uint32 (M, 3) indices.

    The seam rows are duplicated, so there are ``(tubular+1) * (radial+1)``
    vertices and ``2 * tubular * radial`` triangles.
    """
    positions = []
    for i in range(tubular_segments + 1):
        u = i / tubular_segments * p * math.pi * 2
        p1 = _knot_point(u, p, q, radius)
        p2 = _knot_point(u + 0.01, p, q, radius)

        tangent = p2 - p1
        normal = p2 + p1
        binormal = np.cross(tangent, normal)
        normal = np.cross(binormal, tangent)
        binormal /= np.linalg.norm(binormal)
        normal /= np.linalg.norm(normal)

        for j in range(radial_segments + 1):
            v = j / radial_segments * math.pi * 2
            cx = -tube * math.cos(v)
            cy = tube * math.sin(v)
            positions.append(p1 + cx * normal + cy * binormal)

    indices = []
    row = radial_segments + 1
    for j in range(1, tubular_segments + 1):
        for i in range(1, radial_segments + 1):
            a = row * (j - 1) + (i - 1)
            b = row * j + (i - 1)
            c = row * j + i
            d = row * (j - 1) + i
            indices.append((a, b, d))
            indices.append((b, c, d))

    return np.array(positions, dtype=np.float32), np.array(indices, dtype=np.uint32)


def placeholder_mesh() -> Tuple[np.ndarray, np.ndarray]:
    """The designated fallback shape."""
    return torus_knot()
