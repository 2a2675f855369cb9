import numpy as np
import pytest

from config import IngestConfig
from fallback_geometry import torus_knot
from geometry_validator import GeometryValidator
from ingest_errors import InvalidGeometry
from model_archives import png_bytes
from preview_assets import describe_image, index_preview_assets, parse_plate_names, plate_ids_from_entries


def test_preview_ranking_prefers_thumbnail():
    index = index_preview_assets([
        "Metadata/plate_1.png",
        "Metadata/top_1.png",
        "Metadata/thumbnail.png",
        "3D/Textures/skin.png",
    ])
    assert index.best == "Metadata/thumbnail.png"
    assert index.by_plate == {1: "Metadata/plate_1.png"}


def test_plate_ids_and_json_flags():
    plates = plate_ids_from_entries([
        "Metadata/plate_2.png", "Metadata/plate_1.json", "Metadata/plate_1.png", "Metadata/plate_10_small.png",
    ])
    assert plates == {1: True, 2: False}


def test_plate_names():
    text = (
        '<config><plate><metadata key="plater_id" value="3"/><metadata key="plater_name" value=" Lids "/></plate>'
        '<plate><metadata key="plater_id" value="4"/></plate></config>'
    )
    assert parse_plate_names(text) == {3: "Lids"}


def test_describe_image():
    image = describe_image("Metadata/plate_1.png", png_bytes(8, 5), embed=False)
    assert (image.width, image.height) == (8, 5)
    assert image.media_type == "image/png"
    assert image.data_url is None


def test_torus_knot_shape():
    positions, indices = torus_knot()
    assert positions.shape == (101 * 17, 3)
    assert indices.shape == (100 * 16 * 2, 3)
    assert int(indices.max()) < len(positions)
    assert np.all(np.isfinite(positions))


def test_validator_rules():
    validator = GeometryValidator(IngestConfig(max_model_dimension=50))
    tri = np.array([[0, 1, 2]], dtype=np.uint32)
    pts = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0]], dtype=np.float32)
    assert validator.validate(pts, tri, "3mf").size.x == 1.0

    with pytest.raises(InvalidGeometry):
        validator.validate(np.zeros((0, 3), dtype=np.float32), tri, "3mf")
    with pytest.raises(InvalidGeometry):
        validator.validate(pts, np.zeros((0, 3), dtype=np.uint32), "3mf")
    with pytest.raises(InvalidGeometry):
        validator.validate(np.array([[0, 0, 0], [np.nan, 0, 0], [0, 1, 0]], dtype=np.float32), tri, "stl")
    with pytest.raises(InvalidGeometry):
        validator.validate(pts * 100, tri, "obj")
    # point clouds are allowed for scans
    assert validator.validate(pts, np.zeros((0, 3), dtype=np.uint32), "ply").size.y == 1.0
