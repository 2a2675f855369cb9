"""Per-format axis and unit corrections.

The result is Y-up. 3MF placements are kept exactly as the authoring slicer
wrote them and glTF is already Y-up, so both pass through unchanged.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)

FLAT_AXIS_RATIO = 0.1
PLY_YZ_RATIO = 0.5
OBJ_MAX_EXTENT = 1000.0
OBJ_MIN_EXTENT = 1.0


@dataclass
class NormalizationResult:
    positions: np.ndarray
    applied: Optional[str] = None


def _rotate_x(positions: np.ndarray, angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    rot = np.array([[1.0, 0.0, 0.0], [0.0, c, -s], [0.0, s, c]])
    return (positions.astype(np.float64) @ rot.T).astype(np.float32)


def _extents(positions: np.ndarray) -> np.ndarray:
    return positions.max(axis=0).astype(np.float64) - positions.min(axis=0).astype(np.float64)


def normalize_coordinates(positions: np.ndarray, source_format: str) -> NormalizationResult:
    """Return corrected positions (a new array) and a label for the correction applied, if any."""
    pts = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
    if len(pts) == 0 or source_format in ("3mf", "gltf", "glb"):
        return NormalizationResult(positions=pts.copy())

    ext = _extents(pts)

    if source_format == "stl":
        # Flat along Z relative to both X and Y: lying in the wrong up-axis.
        if ext[2] < ext[0] * FLAT_AXIS_RATIO and ext[2] < ext[1] * FLAT_AXIS_RATIO:
            logger.info("STL is flat along Z; rotating -90 degrees about X")
            return NormalizationResult(_rotate_x(pts, -math.pi / 2), "rotate_x_-90")
        return NormalizationResult(positions=pts.copy())

    if source_format == "obj":
        largest = float(ext.max())
        if largest > OBJ_MAX_EXTENT:
            logger.info(f"OBJ extent {largest:.1f} > {OBJ_MAX_EXTENT:.0f}; scaling by 0.001")
            return NormalizationResult((pts.astype(np.float64) * 0.001).astype(np.float32), "scale_0.001")
        if 0 < largest < OBJ_MIN_EXTENT:
            logger.info(f"OBJ extent {largest:.4f} < {OBJ_MIN_EXTENT:.0f}; scaling by 1000")
            return NormalizationResult((pts.astype(np.float64) * 1000.0).astype(np.float32), "scale_1000")
        return NormalizationResult(positions=pts.copy())

    if source_format == "ply":
        if ext[1] < ext[2] * PLY_YZ_RATIO:
            logger.info("PLY is shallow along Y; rotating 90 degrees about X")
            return NormalizationResult(_rotate_x(pts, math.pi / 2), "rotate_x_90")
        return NormalizationResult(positions=pts.copy())

    return NormalizationResult(positions=pts.copy())
