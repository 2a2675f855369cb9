"""Model ingestion entry point.

``ingest()`` turns an uploaded file into a ``GeometryResult``. It never
raises: the ``FallbackSupervisor`` converts every failure into a placeholder
mesh flagged with ``is_fallback`` and the error message. For containers the
settings extraction runs as a separate task next to mesh assembly and is
joined at the end, so settings survive even when the geometry does not.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

import numpy as np

from archive_3mf import ArchiveNavigator, decode_entry_text
from config import IngestConfig, get_ingest_config
from coordinate_normalizer import normalize_coordinates
from fallback_geometry import placeholder_mesh
from format_adapters import CONTAINER_FORMAT, detect_format, load_single_file
from geometry_validator import GeometryValidator
from ingest_errors import IngestError, InputTooLarge, InvalidGeometry
from mesh_assembler import MeshAssembler, MeshAssembly
from model_document import ModelDocument, parse_model_document
from models import (
    AffineTransform, BoundingBox, BuildItemSummary, ExtractedSettings, GeometryResult,
    ModelSummary, ObjectSummary, OrientationOutcome, Vec3,
)
from orientation_optimizer import optimize_orientation
from preview_assets import collect_plates
from settings_extractor import SettingsExtractor
from transform_resolver import apply_to_bounds, apply_to_points, resolve_placement

logger = logging.getLogger(__name__)


def _flat_floats(positions: np.ndarray) -> List[float]:
    return np.asarray(positions, dtype=np.float32).reshape(-1).tolist()


def _flat_ints(indices: np.ndarray) -> List[int]:
    return np.asarray(indices, dtype=np.uint32).reshape(-1).tolist()


class FallbackSupervisor:
    """Runs one ingestion and guarantees a renderable result."""

    def __init__(self, data: bytes, file_name: str, config: Optional[IngestConfig] = None):
        self.data = data
        self.file_name = file_name
        self.config = config or get_ingest_config()
        self.validator = GeometryValidator(self.config)
        self.source_format: Optional[str] = None
        self.settings: Optional[ExtractedSettings] = None
        self.diagnostics: List[str] = []

    async def run(self) -> GeometryResult:
        try:
            self.source_format = detect_format(self.file_name)
            if len(self.data) > self.config.max_upload_bytes:
                raise InputTooLarge(
                    f"File too large: {len(self.data) / (1024 * 1024):.1f} MB exceeds "
                    f"{self.config.max_upload_bytes // (1024 * 1024)} MB limit"
                )
            if not self.data:
                raise InvalidGeometry(f"{self.file_name} is empty")

            if self.source_format == CONTAINER_FORMAT:
                return await self._ingest_container()
            return self._ingest_single_file()

        except IngestError as e:
            logger.error(f"Ingestion of {self.file_name} failed ({type(e).__name__}): {e}")
            return self._fallback(str(e), type(e).__name__)
        except Exception as e:
            logger.exception(f"Unexpected error while ingesting {self.file_name}")
            return self._fallback(f"Unexpected error while ingesting {self.file_name}: {e}", type(e).__name__)

    def _fallback(self, error: str, error_kind: str) -> GeometryResult:
        positions, indices = placeholder_mesh()
        self.diagnostics.append(f"Showing placeholder geometry: {error}")
        return GeometryResult(
            source_format=self.source_format or "unknown",
            positions=_flat_floats(positions),
            indices=_flat_ints(indices),
            vertex_count=len(positions),
            triangle_count=len(indices),
            bounding_box=BoundingBox.from_points(positions),
            is_fallback=True,
            error=error,
            error_kind=error_kind,
            settings=self.settings,
            diagnostics=self.diagnostics,
        )

    def _ingest_single_file(self) -> GeometryResult:
        loaded = load_single_file(self.data, self.source_format)
        normalized = normalize_coordinates(loaded.positions, self.source_format)
        bbox = self.validator.validate(normalized.positions, loaded.indices, self.source_format)
        return GeometryResult(
            source_format=self.source_format,
            positions=_flat_floats(normalized.positions),
            indices=_flat_ints(loaded.indices),
            vertex_count=len(normalized.positions),
            triangle_count=len(loaded.indices),
            bounding_box=bbox,
            normalization=normalized.applied,
            diagnostics=self.diagnostics,
        )

    async def _join_settings(self, task: "asyncio.Task", extractor: SettingsExtractor) -> Optional[ExtractedSettings]:
        try:
            return await task
        except Exception:
            logger.exception("Settings extraction failed")
            return None
        finally:
            self.diagnostics.extend(extractor.diagnostics)

    async def _ingest_container(self) -> GeometryResult:
        with ArchiveNavigator(self.data, verify_crc=self.config.verify_crc) as navigator:
            extractor = SettingsExtractor(navigator, navigator.find_primary_model())
            settings_task = asyncio.create_task(extractor.extract())
            try:
                return await self._container_geometry(navigator)
            finally:
                self.settings = await self._join_settings(settings_task, extractor)

    async def _container_geometry(self, navigator: ArchiveNavigator) -> GeometryResult:
        primary_path = navigator.resolve_primary_model()
        text = decode_entry_text(await navigator.read_entry(primary_path))
        document = parse_model_document(text, primary_path)

        assembler = MeshAssembler(navigator, document, primary_path, self.config)
        try:
            assembly = await assembler.assemble()
        finally:
            self.diagnostics.extend(assembler.diagnostics)

        wrappers = document.wrappers_of(assembly.geometry_object_id) if assembly.geometry_object_id else []
        placement = resolve_placement(document.build_items, assembly.geometry_object_id, wrappers)
        if placement.diagnostic:
            self.diagnostics.append(placement.diagnostic)

        normalized = normalize_coordinates(assembly.positions, CONTAINER_FORMAT)
        bbox = self.validator.validate(normalized.positions, assembly.indices, CONTAINER_FORMAT)
        placed_min, placed_max = apply_to_bounds(
            bbox.min.as_tuple(), bbox.max.as_tuple(), placement.transform
        )
        placed_bbox = BoundingBox.from_points(np.array([placed_min, placed_max]))

        summary = await self._summarize(navigator, document, primary_path, assembly)

        # Settings and late diagnostics are attached by ingest_async after the settings task is joined.
        return GeometryResult(
            source_format=CONTAINER_FORMAT,
            positions=_flat_floats(normalized.positions),
            indices=_flat_ints(assembly.indices),
            vertex_count=assembly.vertex_count,
            triangle_count=assembly.triangle_count,
            bounding_box=bbox,
            transform=placement.transform,
            transform_match=placement.match,
            placed_bounding_box=placed_bbox,
            normalization=normalized.applied,
            summary=summary,
            diagnostics=self.diagnostics,
        )

    async def _summarize(self, navigator: ArchiveNavigator, document: ModelDocument,
                         primary_path: str, assembly: MeshAssembly) -> ModelSummary:
        plates, thumbnail = await collect_plates(navigator, self.diagnostics)
        return ModelSummary(
            primary_model_path=primary_path,
            is_production_extension=document.is_production_extension,
            model_files=[n for n in navigator.list_entries() if n.lower().endswith(".model")],
            objects=[
                ObjectSummary(
                    object_id=obj.object_id,
                    name=obj.name,
                    type=obj.object_type,
                    external_path=obj.external_path,
                    part_number=obj.part_number,
                    has_mesh=obj.has_mesh,
                )
                for obj in document.objects
            ],
            build_items=[
                BuildItemSummary(
                    object_id=item.object_id,
                    part_number=item.part_number,
                    printable=item.printable,
                    transform=item.transform,
                )
                for item in document.build_items
            ],
            geometry_strategy=assembly.strategy,
            geometry_object_id=assembly.geometry_object_id,
            plates=plates,
            thumbnail=thumbnail,
        )


def apply_auto_orientation(result: GeometryResult) -> GeometryResult:
    """Run the orientation optimizer on a successful result and return the reoriented copy.

    A placed (3MF) mesh is oriented as it sits on the build plate: the
    placement is baked into the positions first and the result reports an
    identity transform, so positions, ``bounding_box`` and
    ``placed_bounding_box`` all describe the same oriented mesh.
    """
    if result.is_fallback or not result.positions:
        return result
    positions = np.array(result.positions, dtype=np.float32).reshape(-1, 3)
    if result.transform is not None:
        positions = apply_to_points(positions, result.transform)
    oriented = optimize_orientation(positions)
    bbox = BoundingBox.from_points(oriented.positions)
    update = {
        "positions": _flat_floats(oriented.positions),
        "bounding_box": bbox,
        "orientation": OrientationOutcome(
            name=oriented.name,
            rotation=Vec3.from_seq(oriented.rotation),
            score=oriented.score,
        ),
    }
    if result.transform is not None:
        update["transform"] = AffineTransform()
        update["placed_bounding_box"] = bbox
        update["diagnostics"] = result.diagnostics + [
            "Build item transform applied to positions before auto-orientation"
        ]
    return result.model_copy(update=update)


async def ingest_async(data: bytes, file_name: str, config: Optional[IngestConfig] = None,
                       auto_orient: bool = False) -> GeometryResult:
    supervisor = FallbackSupervisor(data, file_name, config)
    result = await supervisor.run()
    if supervisor.settings is not None:
        result.settings = supervisor.settings
    result.diagnostics = list(supervisor.diagnostics)
    if auto_orient:
        try:
            result = apply_auto_orientation(result)
        except Exception as e:
            logger.warning(f"Auto-orientation failed, keeping original orientation: {e}")
            result.diagnostics.append(f"Auto-orientation failed: {e}")
    logger.info(
        f"Ingested {file_name}: {result.vertex_count} vertices, {result.triangle_count} triangles"
        + (f" (fallback: {result.error_kind})" if result.is_fallback else "")
    )
    return result


def ingest(data: bytes, file_name: str, config: Optional[IngestConfig] = None,
           auto_orient: bool = False) -> GeometryResult:
    """Synchronous wrapper around ``ingest_async``.

    Async callers should await ``ingest_async`` directly. When this is called
    from inside a running event loop the ingestion runs on its own loop in a
    worker thread, blocking the caller until it finishes.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(ingest_async(data, file_name, config, auto_orient))

    logger.warning(f"ingest() called from a running event loop; ingesting {file_name} in a worker thread")
    with ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, ingest_async(data, file_name, config, auto_orient)).result()
