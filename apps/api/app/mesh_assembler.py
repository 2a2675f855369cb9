"""Collect mesh data from a 3MF container into one indexed mesh.

Slicers store geometry in different places, so discovery is an ordered list
of strategies:

1. ``main_document`` - ``<mesh>`` elements inline in the primary descriptor.
2. ``object_files`` - per-object descriptors (``3D/Objects/object_N.model``
   and any entry named by a production-extension ``path`` attribute).
3. ``archive_scan`` - every other ``.model``/``.xml`` entry that mentions a
   mesh.

The first strategy that yields any vertex stops the search. Within a strategy
all fragments are concatenated against one running vertex offset.
"""

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, List, Optional

import numpy as np

from archive_3mf import ArchiveNavigator, decode_entry_text
from config import IngestConfig
from ingest_errors import ArchiveCorrupt, MalformedDocument, NoGeometryFound
from mesh_fragment import parse_mesh_fragment
from model_document import (
    ModelDocument, collect_meshes, object_id_from_entry_name, parse_xml,
)

logger = logging.getLogger(__name__)


@dataclass
class MeshSource:
    """One ``<mesh>`` element to parse and where it came from."""
    entry_path: str
    element: object
    object_id: Optional[str]


@dataclass
class MeshStrategy:
    name: str
    sources: Callable[[], AsyncIterator[MeshSource]]


@dataclass
class MeshAssembly:
    positions: np.ndarray
    indices: np.ndarray
    strategy: str
    geometry_object_id: Optional[str]
    contributing_entries: List[str] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)

    @property
    def vertex_count(self) -> int:
        return int(len(self.positions))

    @property
    def triangle_count(self) -> int:
        return int(len(self.indices))


class MeshAssembler:
    """Runs the discovery strategies for one container."""

    def __init__(self, navigator: ArchiveNavigator, document: ModelDocument,
                 primary_path: str, config: Optional[IngestConfig] = None):
        self.navigator = navigator
        self.document = document
        self.primary_path = primary_path
        self.config = config or IngestConfig()
        self.diagnostics: List[str] = []
        self.strategies: List[MeshStrategy] = [
            MeshStrategy("main_document", self._main_document_sources),
            MeshStrategy("object_files", self._object_file_sources),
            MeshStrategy("archive_scan", self._archive_scan_sources),
        ]

    def _skip(self, message: str) -> None:
        logger.warning(message)
        self.diagnostics.append(message)

    async def _main_document_sources(self) -> AsyncIterator[MeshSource]:
        for mesh in self.document.meshes:
            yield MeshSource(self.primary_path, mesh.element, mesh.object_id)

    def object_file_entries(self) -> List[str]:
        """Per-object descriptors in archive order."""
        referenced = set()
        for obj in self.document.objects:
            referenced.update(obj.external_paths)

        entries = []
        for name in self.navigator.list_entries():
            if name == self.primary_path:
                continue
            if ("Objects/" in name and name.endswith(".model")) or name in referenced:
                entries.append(name)

        for path in sorted(referenced):
            if not self.navigator.has_entry(path):
                self._skip(f"Referenced object file not found in archive: {path}")
        return entries

    async def _load_entry_meshes(self, path: str, ceiling: int, require_mesh_text: bool = False):
        """Parse an entry and return its meshes, or ``None`` when it is skipped."""
        try:
            size = self.navigator.entry_size(path)
            if size > ceiling:
                self._skip(f"Skipping {path}: {size / (1024 * 1024):.1f} MB exceeds {ceiling // (1024 * 1024)} MB limit")
                return None
            data = await self.navigator.read_entry(path)
            if require_mesh_text and b"mesh" not in data:
                return None
            root = parse_xml(decode_entry_text(data), path)
        except (MalformedDocument, ArchiveCorrupt, KeyError, ValueError) as e:
            self._skip(f"Skipping {path}: {e}")
            return None
        return collect_meshes(root)

    async def _object_file_sources(self) -> AsyncIterator[MeshSource]:
        for path in self.object_file_entries():
            meshes = await self._load_entry_meshes(path, self.config.max_object_entry_bytes)
            if meshes is None:
                continue

            declared = self.document.object_for_entry(path)
            if declared is not None:
                object_id = declared.object_id
            else:
                object_id = object_id_from_entry_name(path)
            logger.info(f"Object file {path}: {len(meshes)} meshes (object {object_id})")

            for mesh in meshes:
                yield MeshSource(path, mesh.element, object_id)

    async def _archive_scan_sources(self) -> AsyncIterator[MeshSource]:
        for path in self.navigator.list_entries():
            if path == self.primary_path:
                continue
            lower = path.lower()
            if not (lower.endswith(".model") or lower.endswith(".xml")):
                continue
            meshes = await self._load_entry_meshes(path, self.config.max_scan_entry_bytes,
                                                   require_mesh_text=True)
            if not meshes:
                continue
            logger.info(f"Scan found {len(meshes)} meshes in {path}")
            for mesh in meshes:
                yield MeshSource(path, mesh.element, mesh.object_id)

    async def assemble(self) -> MeshAssembly:
        """Run the strategies in order and return the first non-empty result.

        Raises:
            NoGeometryFound: no strategy produced a single vertex
        """
        for strategy in self.strategies:
            positions: List[np.ndarray] = []
            indices: List[np.ndarray] = []
            offset = 0
            contributors: List[MeshSource] = []

            async for source in strategy.sources():
                fragment = await parse_mesh_fragment(source.element, offset, self.config.yield_every)
                if fragment.dropped_triangles:
                    self.diagnostics.append(
                        f"Dropped {fragment.dropped_triangles} triangles with out-of-range indices in {source.entry_path}"
                    )
                if fragment.vertex_count == 0:
                    continue
                positions.append(fragment.positions)
                indices.append(fragment.indices)
                offset += fragment.vertex_count
                contributors.append(source)

            if offset == 0:
                logger.info(f"Mesh strategy '{strategy.name}' found no vertex data")
                continue

            geometry_object_id = next(
                (src.object_id for src in contributors if src.object_id is not None), None
            )
            entries: List[str] = []
            for src in contributors:
                if src.entry_path not in entries:
                    entries.append(src.entry_path)

            assembly = MeshAssembly(
                positions=np.concatenate(positions).astype(np.float32),
                indices=np.concatenate(indices).astype(np.uint32),
                strategy=strategy.name,
                geometry_object_id=geometry_object_id,
                contributing_entries=entries,
                diagnostics=self.diagnostics,
            )
            logger.info(
                f"Assembled mesh via '{strategy.name}': {assembly.vertex_count} vertices, "
                f"{assembly.triangle_count} triangles from {len(entries)} entries "
                f"(geometry object {geometry_object_id})"
            )
            return assembly

        raise NoGeometryFound("No mesh data found in 3MF archive (checked main model, object files and full scan)")
