"""Pick a print orientation from a fixed set of axis-aligned rotations.

Coordinates are Y-up: height is the Y extent and the footprint lies in the
XZ plane. Each candidate rotation (XYZ Euler, about the origin) is scored by
``printability_score``; the best one wins, ties going to the earlier
candidate, and the rotated model is moved so its lowest point is at Y = 0.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np

from transform_resolver import rotation_matrix_from_euler

logger = logging.getLogger(__name__)

HALF_PI = math.pi / 2

# (name, (x, y, z) Euler radians); identity first so it wins ties.
CANDIDATES: List[Tuple[str, Tuple[float, float, float]]] = [
    ("identity", (0.0, 0.0, 0.0)),
    ("x+90", (HALF_PI, 0.0, 0.0)),
    ("x-90", (-HALF_PI, 0.0, 0.0)),
    ("y+90", (0.0, HALF_PI, 0.0)),
    ("y-90", (0.0, -HALF_PI, 0.0)),
    ("z+90", (0.0, 0.0, HALF_PI)),
    ("z-90", (0.0, 0.0, -HALF_PI)),
    ("x180", (math.pi, 0.0, 0.0)),
    ("y180", (0.0, math.pi, 0.0)),
]

HEIGHT_WEIGHT = 0.4
BASE_WEIGHT = 0.3
ASPECT_WEIGHT = 0.2
FLATNESS_WEIGHT = 0.1
FLOOR_TOLERANCE = 0.1


@dataclass
class OrientationCandidate:
    name: str
    rotation: Tuple[float, float, float]
    score: float


@dataclass
class OrientationResult:
    name: str
    rotation: Tuple[float, float, float]
    score: float
    positions: np.ndarray
    candidates: List[OrientationCandidate] = field(default_factory=list)


def printability_score(bmin: np.ndarray, bmax: np.ndarray) -> float:
    """Weighted 0-100 score of an axis-aligned bounding box.

    - 40%: low height relative to the larger footprint side
    - 30%: footprint area relative to the largest face of the box
    - 20%: height close to sqrt(footprint area)
    - 10%: box already resting near Y = 0
    """
    sx, sy, sz = (float(v) for v in (bmax - bmin))
    height = sy

    widest = max(sx, sz)
    height_score = max(0.0, 100.0 - (height / widest) * 50.0) if widest > 0 else 0.0

    base_area = sx * sz
    largest_face = max(sx * sy, sz * sy, sx * sz)
    base_score = (base_area / largest_face) * 100.0 if largest_face > 0 else 0.0

    if base_area > 0:
        aspect = height / math.sqrt(base_area)
        aspect_score = max(0.0, 100.0 - abs(aspect - 1.0) * 30.0)
    else:
        aspect_score = 0.0

    flatness_score = 100.0 if float(bmin[1]) > -FLOOR_TOLERANCE else 50.0

    return (height_score * HEIGHT_WEIGHT
            + base_score * BASE_WEIGHT
            + aspect_score * ASPECT_WEIGHT
            + flatness_score * FLATNESS_WEIGHT)


def rotate_positions(positions: np.ndarray, rotation: Tuple[float, float, float]) -> np.ndarray:
    # Candidates are axis-aligned; snap sin/cos noise to exact 0 and +-1.
    rot = np.round(rotation_matrix_from_euler(*rotation), 12)
    return positions.astype(np.float64) @ rot.T


def seat_on_floor(positions: np.ndarray) -> np.ndarray:
    """Translate along Y so the lowest point is exactly 0."""
    seated = np.array(positions, dtype=np.float64)
    if len(seated):
        seated[:, 1] -= seated[:, 1].min()
    return seated


def optimize_orientation(positions: np.ndarray) -> OrientationResult:
    """Evaluate every candidate rotation and apply the best one."""
    pts = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
    if len(pts) == 0:
        raise ValueError("Cannot orient an empty mesh")

    best_index = 0
    best_score = -math.inf
    best_points = pts
    candidates: List[OrientationCandidate] = []

    for index, (name, rotation) in enumerate(CANDIDATES):
        rotated = pts if index == 0 else rotate_positions(pts, rotation)
        score = printability_score(rotated.min(axis=0), rotated.max(axis=0))
        candidates.append(OrientationCandidate(name=name, rotation=rotation, score=score))
        logger.debug(f"Orientation {name}: score {score:.2f}")
        if score > best_score:
            best_index, best_score, best_points = index, score, rotated

    name, rotation = CANDIDATES[best_index]
    logger.info(f"Selected orientation {name} (score {best_score:.2f}, identity {candidates[0].score:.2f})")
    return OrientationResult(
        name=name,
        rotation=rotation,
        score=best_score,
        positions=seat_on_floor(best_points).astype(np.float32),
        candidates=candidates,
    )
