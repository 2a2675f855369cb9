"""Sanity checks on a normalized mesh before it is returned to the caller."""

import logging
from typing import List

import numpy as np

from config import IngestConfig
from ingest_errors import InvalidGeometry
from models import BoundingBox

logger = logging.getLogger(__name__)

# Formats whose files may legitimately be point clouds.
POINT_CLOUD_FORMATS = ("ply",)


class GeometryValidator:
    """Validates assembled geometry against size and integrity limits."""

    def __init__(self, config: IngestConfig):
        self.config = config

    def validate(self, positions: np.ndarray, indices: np.ndarray, source_format: str) -> BoundingBox:
        """Check a mesh and return its bounding box.

        Args:
            positions: (N, 3) vertex array
            indices: (M, 3) triangle array
            source_format: detected format, e.g. ``"3mf"``

        Returns:
            BoundingBox of the positions

        Raises:
            InvalidGeometry: empty or non-finite data, out-of-range indices,
                missing triangles, or an oversized model
        """
        if positions is None or len(positions) == 0:
            raise InvalidGeometry("Model contains no vertices")

        if not np.all(np.isfinite(positions)):
            raise InvalidGeometry("Model bounds are not finite (NaN or infinite vertex coordinates)")

        if len(indices) == 0 and source_format not in POINT_CLOUD_FORMATS:
            raise InvalidGeometry(f"Model has {len(positions)} vertices but no triangles")

        if len(indices) and int(indices.max()) >= len(positions):
            raise InvalidGeometry(
                f"Triangle index {int(indices.max())} out of range for {len(positions)} vertices"
            )

        bbox = BoundingBox.from_points(positions)
        size = bbox.size
        logger.info(f"Model dimensions: {size.x:.1f}x{size.y:.1f}x{size.z:.1f}")

        warnings: List[str] = self._check_dimensions(size.x, size.y, size.z)
        if warnings:
            raise InvalidGeometry("; ".join(warnings))
        return bbox

    def _check_dimensions(self, width: float, height: float, depth: float) -> List[str]:
        limit = self.config.max_model_dimension
        problems = []
        for axis, value in (("X", width), ("Y", height), ("Z", depth)):
            if value > limit:
                problems.append(f"Model too large along {axis}: {value:.1f} > {limit:.1f}")
        return problems
