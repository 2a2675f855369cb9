"""
Pydantic models for ingestion results and API request/response bodies.

All models serialize with camelCase aliases (``isFallback``,
``settings.printSettings.layerHeight``) and accept either spelling on input.
"""
from typing import List, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, protected_namespaces=())


class Vec3(CamelModel):
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    @classmethod
    def from_seq(cls, values) -> "Vec3":
        return cls(x=float(values[0]), y=float(values[1]), z=float(values[2]))

    def as_tuple(self):
        return (self.x, self.y, self.z)


class BoundingBox(CamelModel):
    """Axis-aligned bounds; ``size`` is ``max - min`` per axis."""
    min: Vec3
    max: Vec3
    size: Vec3

    @classmethod
    def from_points(cls, points: np.ndarray) -> "BoundingBox":
        """Bounds of an (N, 3) array. An empty array yields an inverted (infinite) box."""
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if len(pts) == 0:
            inf = float("inf")
            return cls(
                min=Vec3(x=inf, y=inf, z=inf),
                max=Vec3(x=-inf, y=-inf, z=-inf),
                size=Vec3(x=-inf, y=-inf, z=-inf),
            )
        bmin = pts.min(axis=0)
        bmax = pts.max(axis=0)
        return cls(min=Vec3.from_seq(bmin), max=Vec3.from_seq(bmax), size=Vec3.from_seq(bmax - bmin))


class AffineTransform(CamelModel):
    """Placement decoded from a 3MF transform.

    ``rotation`` holds XYZ-order Euler angles in radians. ``matrix`` keeps the
    12 source values (3MF column-major order) so the transform can always be
    rebuilt exactly.
    """
    position: Vec3 = Field(default_factory=Vec3)
    rotation: Vec3 = Field(default_factory=Vec3)
    scale: Vec3 = Field(default_factory=lambda: Vec3(x=1.0, y=1.0, z=1.0))
    matrix: List[float] = Field(
        default_factory=lambda: [1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0]
    )


# --- Extracted slicer settings ---------------------------------------------

class SpeedSettings(CamelModel):
    print: Optional[float] = None
    travel: Optional[float] = None
    first_layer: Optional[float] = None


class SupportSettings(CamelModel):
    enabled: Optional[bool] = None
    type: Optional[str] = None
    angle: Optional[float] = None


class RetractionSettings(CamelModel):
    enabled: Optional[bool] = None
    distance: Optional[float] = None
    speed: Optional[float] = None


class PrintSettings(CamelModel):
    layer_height: Optional[float] = None
    infill: Optional[float] = None
    speed: Optional[SpeedSettings] = None
    support: Optional[SupportSettings] = None
    retraction: Optional[RetractionSettings] = None


class TemperatureRange(CamelModel):
    nozzle: Optional[float] = None
    bed: Optional[float] = None


class FilamentSettings(CamelModel):
    type: Optional[str] = None
    brand: Optional[str] = None
    color: Optional[str] = None
    diameter: Optional[float] = None
    temperature: Optional[TemperatureRange] = None


class BuildPlate(CamelModel):
    width: float = 256.0
    height: float = 256.0
    depth: float = 256.0


class PrinterSettings(CamelModel):
    name: Optional[str] = None
    model: Optional[str] = None
    nozzle_diameter: Optional[float] = None
    build_plate: Optional[BuildPlate] = None


class AmsSettings(CamelModel):
    enabled: Optional[bool] = None
    slot: Optional[int] = None


class BambuSettings(CamelModel):
    """Vendor flags written by Bambu Studio / OrcaSlicer."""
    ams: Optional[AmsSettings] = None
    timelapse: Optional[bool] = None
    flow_calibration: Optional[bool] = None
    adaptive_layers: Optional[bool] = None


class ProvenanceMetadata(CamelModel):
    application: Optional[str] = None
    version: Optional[str] = None
    creation_date: Optional[str] = None
    modification_date: Optional[str] = None
    title: Optional[str] = None
    designer: Optional[str] = None
    description: Optional[str] = None
    total_time: Optional[float] = None
    filament_used: Optional[float] = None
    filament_weight: Optional[float] = None


class ExtractedSettings(CamelModel):
    """Settings recovered from a container. A missing source leaves its sub-record ``None``."""
    print_settings: Optional[PrintSettings] = None
    filament: Optional[FilamentSettings] = None
    printer: Optional[PrinterSettings] = None
    bambu_settings: Optional[BambuSettings] = None
    metadata: Optional[ProvenanceMetadata] = None


# --- Container summary -------------------------------------------------------

class PreviewImage(CamelModel):
    path: str
    media_type: str
    width: int
    height: int
    data_url: Optional[str] = None


class PlateSummary(CamelModel):
    plate_id: int
    name: str
    thumbnail_path: Optional[str] = None
    has_plate_json: bool = False


class ObjectSummary(CamelModel):
    object_id: str
    name: Optional[str] = None
    type: Optional[str] = None
    external_path: Optional[str] = None
    part_number: Optional[str] = None
    has_mesh: bool = False


class BuildItemSummary(CamelModel):
    object_id: str
    part_number: Optional[str] = None
    printable: bool = True
    transform: AffineTransform


class ModelSummary(CamelModel):
    primary_model_path: str
    is_production_extension: bool = False
    model_files: List[str] = Field(default_factory=list)
    objects: List[ObjectSummary] = Field(default_factory=list)
    build_items: List[BuildItemSummary] = Field(default_factory=list)
    geometry_strategy: Optional[str] = None
    geometry_object_id: Optional[str] = None
    plates: List[PlateSummary] = Field(default_factory=list)
    thumbnail: Optional[PreviewImage] = None


# --- Pipeline output ---------------------------------------------------------

class OrientationOutcome(CamelModel):
    name: str
    rotation: Vec3
    score: float


class GeometryResult(CamelModel):
    """Terminal output of one ingestion.

    ``is_fallback=True`` means the mesh is a placeholder: display only, not
    printable. ``error`` then describes why.
    """
    source_format: str
    positions: List[float]
    indices: List[int]
    vertex_count: int
    triangle_count: int
    bounding_box: BoundingBox
    is_fallback: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None
    settings: Optional[ExtractedSettings] = None
    transform: Optional[AffineTransform] = None
    transform_match: Optional[str] = None
    placed_bounding_box: Optional[BoundingBox] = None
    normalization: Optional[str] = None
    orientation: Optional[OrientationOutcome] = None
    summary: Optional[ModelSummary] = None
    diagnostics: List[str] = Field(default_factory=list)


class OrientRequest(CamelModel):
    positions: List[float]
    indices: List[int] = Field(default_factory=list)


class CandidateScore(CamelModel):
    name: str
    rotation: Vec3
    score: float


class OrientResponse(CamelModel):
    name: str
    rotation: Vec3
    score: float
    candidates: List[CandidateScore]
    positions: List[float]
    indices: List[int]
    bounding_box: BoundingBox
