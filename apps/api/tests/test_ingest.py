import asyncio
import math

import numpy as np
import pytest
import trimesh

from config import IngestConfig
from fallback_geometry import placeholder_mesh
from ingest import apply_auto_orientation, ingest
from model_archives import (
    RX90_TRANSFORM, UNIT_CUBE_VERTICES, corrupt_entry, cube_3mf, cube_model, make_3mf, mesh_xml,
    model_xml, png_bytes, production_3mf,
)

CONFIG = IngestConfig()


def test_cube_with_rotated_build_item():
    result = ingest(cube_3mf(), "cube.3mf", CONFIG)
    assert not result.is_fallback
    assert result.error is None
    assert result.source_format == "3mf"
    assert result.vertex_count == 8
    assert result.triangle_count == 12
    assert len(result.positions) == 24
    assert len(result.indices) == 36
    assert result.transform.rotation.x == pytest.approx(math.pi / 2)
    assert result.transform.rotation.y == pytest.approx(0.0)
    assert result.transform.rotation.z == pytest.approx(0.0)
    assert result.transform.position.as_tuple() == pytest.approx((10.0, 0.0, 0.0))
    assert result.transform_match == "matched"
    assert result.normalization is None
    assert result.bounding_box.size.as_tuple() == pytest.approx((1.0, 1.0, 1.0))
    assert result.placed_bounding_box.min.as_tuple() == pytest.approx((10.0, -1.0, 0.0))
    assert result.summary.geometry_strategy == "main_document"
    assert result.summary.geometry_object_id == "1"


def test_every_index_in_range():
    text = model_xml(
        f'<object id="1">{mesh_xml()}</object><object id="2">{mesh_xml(offset=(3, 0, 0))}</object>',
        '<item objectid="1"/>',
    )
    result = ingest(make_3mf({"3D/3dmodel.model": text}), "two.3mf", CONFIG)
    assert result.vertex_count == 16
    assert result.triangle_count == 24
    assert max(result.indices) < result.vertex_count
    assert min(result.indices) >= 0


def test_matching_build_item_is_used_not_first():
    result = ingest(production_3mf(), "bambu.3mf", CONFIG)
    assert not result.is_fallback
    assert result.summary.is_production_extension
    assert result.summary.geometry_strategy == "object_files"
    assert result.transform_match == "matched"
    assert result.transform.position.as_tuple() == pytest.approx((10.0, 0.0, 0.0))
    assert result.transform.rotation.x == pytest.approx(math.pi / 2)


def test_unmatched_build_item_is_flagged():
    text = model_xml(f'<object id="1">{mesh_xml()}</object>', '<item objectid="42" transform="1 0 0 0 1 0 0 0 1 7 0 0"/>')
    result = ingest(make_3mf({"3D/3dmodel.model": text}), "odd.3mf", CONFIG)
    assert not result.is_fallback
    assert result.transform_match == "first_item"
    assert result.transform.position.x == pytest.approx(7.0)
    assert any("falling back to first build item" in d for d in result.diagnostics)


def test_missing_descriptor_falls_back_to_placeholder():
    data = make_3mf({"Metadata/project_settings.config": "layer_height = 0.2\n"})
    result = ingest(data, "broken.3mf", CONFIG)
    positions, indices = placeholder_mesh()
    assert result.is_fallback
    assert result.error_kind == "ModelDescriptorMissing"
    assert "primary model descriptor" in result.error
    assert result.vertex_count == len(positions)
    assert result.triangle_count == len(indices)
    assert result.positions == np.asarray(positions, dtype=np.float32).reshape(-1).tolist()
    # settings recovered before the failure survive on the fallback
    assert result.settings.print_settings.layer_height == 0.2


def test_settings_from_slicing_config():
    data = cube_3mf(extra={"Metadata/project_settings.config": "layer_height=0.2\n"})
    result = ingest(data, "cube.3mf", CONFIG)
    assert result.settings.print_settings.layer_height == 0.2
    assert result.settings.print_settings.infill is None
    dumped = result.model_dump(by_alias=True)
    assert dumped["settings"]["printSettings"]["layerHeight"] == 0.2
    assert dumped["isFallback"] is False


def test_reingest_is_deterministic():
    data = production_3mf()
    first = ingest(data, "a.3mf", CONFIG)
    second = ingest(data, "a.3mf", CONFIG)
    assert first.positions == second.positions
    assert first.indices == second.indices


@pytest.mark.parametrize("data,name,kind", [
    (b"not a zip", "bad.3mf", "ArchiveCorrupt"),
    (make_3mf({"3D/3dmodel.model": "<model><resources>"}), "bad.3mf", "MalformedDocument"),
    (make_3mf({"3D/3dmodel.model": model_xml("", "")}), "empty.3mf", "NoGeometryFound"),
    (b"solid x\nendsolid x\n", "model.step", "UnsupportedFormat"),
    (b"", "empty.stl", "InvalidGeometry"),
])
def test_failures_become_fallbacks(data, name, kind):
    result = ingest(data, name, CONFIG)
    assert result.is_fallback
    assert result.error_kind == kind
    assert result.error
    assert result.vertex_count > 0


def test_unsupported_format_reports_unknown_source():
    result = ingest(b"data", "model.step", CONFIG)
    assert result.source_format == "unknown"


def test_upload_size_ceiling():
    result = ingest(cube_3mf(), "cube.3mf", IngestConfig(max_upload_bytes=100))
    assert result.is_fallback
    assert result.error_kind == "InputTooLarge"


def test_oversized_model_is_invalid():
    huge = model_xml(f'<object id="1">{mesh_xml(vertices=[(0, 0, 0), (20000, 0, 0), (0, 1, 0)], triangles=[(0, 1, 2)])}</object>')
    result = ingest(make_3mf({"3D/3dmodel.model": huge}), "huge.3mf", CONFIG)
    assert result.is_fallback
    assert result.error_kind == "InvalidGeometry"


def test_flat_stl_is_normalized():
    data = trimesh.creation.box(extents=(100, 80, 2)).export(file_type="stl")
    result = ingest(data, "plate.stl", CONFIG)
    assert not result.is_fallback
    assert result.normalization == "rotate_x_-90"
    assert result.triangle_count == 12
    assert result.bounding_box.size.y == pytest.approx(2.0, abs=1e-4)
    assert result.settings is None
    assert result.transform is None


def test_container_is_never_reoriented_by_normalization():
    flat = model_xml(
        f'<object id="1">{mesh_xml(vertices=[(0, 0, 0), (100, 0, 0), (100, 80, 0), (0, 80, 2)], triangles=[(0, 1, 2), (0, 2, 3)])}</object>',
        '<item objectid="1"/>',
    )
    result = ingest(make_3mf({"3D/3dmodel.model": flat}), "flat.3mf", CONFIG)
    assert result.normalization is None
    assert result.positions[:3] == [0.0, 0.0, 0.0]
    assert result.positions[6:9] == [100.0, 80.0, 0.0]


def test_plates_and_thumbnail_summary():
    model_settings = (
        '<config><plate><metadata key="plater_id" value="1"/>'
        '<metadata key="plater_name" value="Fronts"/></plate></config>'
    )
    data = cube_3mf(extra={
        "Metadata/plate_1.png": png_bytes(4, 3),
        "Metadata/plate_1.json": "{}",
        "Metadata/plate_2.png": png_bytes(2, 2),
        "Metadata/model_settings.config": model_settings,
    })
    result = ingest(data, "plates.3mf", CONFIG)
    plates = result.summary.plates
    assert [p.plate_id for p in plates] == [1, 2]
    assert plates[0].name == "Fronts"
    assert plates[0].has_plate_json
    assert plates[1].name == "Plate 2"
    assert plates[1].thumbnail_path == "Metadata/plate_2.png"
    thumb = result.summary.thumbnail
    assert thumb.media_type == "image/png"
    assert thumb.data_url.startswith("data:image/png;base64,")


def test_unreadable_preview_only_adds_diagnostic():
    data = cube_3mf(extra={"Metadata/thumbnail.png": b"not an image"})
    result = ingest(data, "cube.3mf", CONFIG)
    assert not result.is_fallback
    assert result.summary.thumbnail is None
    assert any("thumbnail.png" in d for d in result.diagnostics)


def test_auto_orient_seats_model():
    data = trimesh.creation.box(extents=(10, 100, 20)).export(file_type="stl")
    result = ingest(data, "column.stl", CONFIG, auto_orient=True)
    assert result.orientation is not None
    ys = result.positions[1::3]
    assert min(ys) == 0.0
    assert result.bounding_box.min.y == 0.0


def test_auto_orient_bakes_build_item_placement():
    slab = [(2 * x, 20 * y, 4 * z) for x, y, z in UNIT_CUBE_VERTICES]
    model = model_xml(
        f'<object id="1" type="model">{mesh_xml(vertices=slab)}</object>',
        f'<item objectid="1" transform="{RX90_TRANSFORM}"/>',
    )
    result = ingest(make_3mf({"3D/3dmodel.model": model}), "slab.3mf", CONFIG, auto_orient=True)
    assert not result.is_fallback
    assert result.orientation is not None

    pts = np.array(result.positions).reshape(-1, 3)
    assert float(pts[:, 1].min()) == 0.0
    assert sorted(pts.max(axis=0) - pts.min(axis=0)) == pytest.approx([2, 4, 20], abs=1e-4)
    # lying on the 20 x 4 face
    assert result.bounding_box.size.y == pytest.approx(2, abs=1e-4)

    # positions are now in the build frame, so the placement is identity
    assert result.transform.matrix == [1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0]
    assert result.transform.position.as_tuple() == (0.0, 0.0, 0.0)
    assert result.placed_bounding_box == result.bounding_box
    assert result.placed_bounding_box.min.as_tuple() == pytest.approx(tuple(pts.min(axis=0)))
    assert result.placed_bounding_box.max.as_tuple() == pytest.approx(tuple(pts.max(axis=0)))
    assert result.transform_match == "matched"


def test_undecodable_object_file_does_not_abort_ingestion():
    main = model_xml(
        '<object id="2" type="model"><components>'
        '<component p:path="/3D/Objects/object_1.model" objectid="1"/>'
        '</components></object>',
        '<item objectid="2"/>',
        production=True,
    )
    data = corrupt_entry(make_3mf({
        "3D/3dmodel.model": main,
        "3D/Objects/object_1.model": model_xml(f'<object id="1">{mesh_xml()}</object>'),
        "3D/Objects/object_2.model": model_xml(f'<object id="1">{mesh_xml()}</object>'),
    }), "3D/Objects/object_1.model")

    result = ingest(data, "damaged.3mf", IngestConfig(verify_crc=False))
    assert not result.is_fallback
    assert result.vertex_count == 8
    assert result.summary.geometry_strategy == "object_files"
    assert any("object_1.model" in d for d in result.diagnostics)

    # with integrity checking on, the same archive is rejected up front
    checked = ingest(data, "damaged.3mf", CONFIG)
    assert checked.is_fallback
    assert checked.error_kind == "ArchiveCorrupt"


def test_sync_ingest_inside_running_loop():
    async def caller():
        return ingest(cube_3mf(), "cube.3mf", CONFIG)

    result = asyncio.run(caller())
    assert not result.is_fallback
    assert result.vertex_count == 8


def test_auto_orient_skips_fallback():
    result = ingest(b"", "x.stl", CONFIG)
    assert apply_auto_orientation(result) is result


def test_alternate_descriptor_path():
    result = ingest(make_3mf({"3dmodel.model": cube_model()}), "alt.3mf", CONFIG)
    assert not result.is_fallback
    assert result.summary.primary_model_path == "3dmodel.model"
