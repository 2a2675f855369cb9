"""Parse one 3MF ``<mesh>`` element into a flat vertex/index fragment.

Parsing is driven through ``FragmentCursor``: each ``step()`` handles at most
``batch_size`` vertices or triangles and reports whether it is finished. The
async driver hands control back to the event loop between batches without
changing the output.
"""

import asyncio
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from model_document import local_name

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5000


@dataclass
class MeshFragment:
    """Vertices as float32 (N, 3); triangles as uint32 (M, 3) with the offset already applied."""
    positions: np.ndarray
    indices: np.ndarray
    vertex_count: int
    dropped_triangles: int = 0

    @property
    def triangle_count(self) -> int:
        return int(len(self.indices))


def _child(elem: ET.Element, name: str) -> Optional[ET.Element]:
    for child in elem:
        if local_name(child.tag) == name:
            return child
    return None


def _num(elem: ET.Element, name: str) -> float:
    """Numeric attribute; missing or unparsable values read as 0."""
    raw = elem.get(name)
    if raw is None:
        return 0.0
    try:
        return float(raw)
    except ValueError:
        return 0.0


def _index(elem: ET.Element, name: str) -> int:
    raw = elem.get(name)
    if raw is None:
        return 0
    try:
        return int(raw)
    except ValueError:
        try:
            return int(float(raw))
        except ValueError:
            return 0


class FragmentCursor:
    """Resumable parse of a single mesh element.

    Vertices are read first, then triangles. Triangles referencing a vertex
    outside this mesh are dropped and counted.
    """

    def __init__(self, mesh_elem: ET.Element, vertex_offset: int = 0,
                 batch_size: int = DEFAULT_BATCH_SIZE):
        self.vertex_offset = vertex_offset
        self.batch_size = max(1, int(batch_size))
        self.steps = 0

        vertices_elem = _child(mesh_elem, "vertices")
        triangles_elem = _child(mesh_elem, "triangles")
        if vertices_elem is None or triangles_elem is None:
            self._vertices: List[ET.Element] = []
            self._triangles: List[ET.Element] = []
        else:
            self._vertices = [v for v in vertices_elem if local_name(v.tag) == "vertex"]
            self._triangles = [t for t in triangles_elem if local_name(t.tag) == "triangle"]

        self._positions = np.zeros((len(self._vertices), 3), dtype=np.float32)
        self._indices: List[List[int]] = []
        self._dropped = 0
        self._v_pos = 0
        self._t_pos = 0

    @property
    def done(self) -> bool:
        return self._v_pos >= len(self._vertices) and self._t_pos >= len(self._triangles)

    def step(self) -> bool:
        """Process one batch. Returns True once the whole element is consumed."""
        self.steps += 1
        if self._v_pos < len(self._vertices):
            end = min(self._v_pos + self.batch_size, len(self._vertices))
            for i in range(self._v_pos, end):
                v = self._vertices[i]
                self._positions[i] = (_num(v, "x"), _num(v, "y"), _num(v, "z"))
            self._v_pos = end
            return self.done

        vertex_count = len(self._vertices)
        end = min(self._t_pos + self.batch_size, len(self._triangles))
        for i in range(self._t_pos, end):
            t = self._triangles[i]
            tri = (_index(t, "v1"), _index(t, "v2"), _index(t, "v3"))
            if min(tri) < 0 or max(tri) >= vertex_count:
                self._dropped += 1
                continue
            self._indices.append([tri[0] + self.vertex_offset,
                                  tri[1] + self.vertex_offset,
                                  tri[2] + self.vertex_offset])
        self._t_pos = end
        return self.done

    def result(self) -> MeshFragment:
        if not self.done:
            raise RuntimeError("FragmentCursor.result() called before parsing finished")
        if self._dropped:
            logger.warning(f"Dropped {self._dropped} triangles with out-of-range vertex indices")
        indices = (np.array(self._indices, dtype=np.uint32).reshape(-1, 3)
                   if self._indices else np.zeros((0, 3), dtype=np.uint32))
        return MeshFragment(
            positions=self._positions,
            indices=indices,
            vertex_count=len(self._vertices),
            dropped_triangles=self._dropped,
        )


async def parse_mesh_fragment(mesh_elem: ET.Element, vertex_offset: int = 0,
                              batch_size: int = DEFAULT_BATCH_SIZE) -> MeshFragment:
    """Parse a mesh element, yielding to the event loop between batches."""
    cursor = FragmentCursor(mesh_elem, vertex_offset, batch_size)
    while not cursor.done:
        cursor.step()
        await asyncio.sleep(0)
    fragment = cursor.result()
    logger.debug(
        f"Parsed mesh fragment: {fragment.vertex_count} vertices, "
        f"{fragment.triangle_count} triangles in {cursor.steps} batches"
    )
    return fragment
