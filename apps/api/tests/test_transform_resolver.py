import math

import numpy as np
import pytest

from model_archives import RX90_TRANSFORM
from model_document import BuildItem
from models import AffineTransform, Vec3
from transform_resolver import (
    apply_to_bounds,
    compose_matrix,
    decode_transform,
    decompose_matrix,
    parse_transform_values,
    resolve_placement,
    transform_matrix,
)


def test_rx90_with_translation():
    t = decode_transform(RX90_TRANSFORM)
    assert t.rotation.x == pytest.approx(math.pi / 2)
    assert t.rotation.y == pytest.approx(0.0)
    assert t.rotation.z == pytest.approx(0.0)
    assert t.position.as_tuple() == pytest.approx((10.0, 0.0, 0.0))
    assert t.scale.as_tuple() == pytest.approx((1.0, 1.0, 1.0))


def test_scale_and_rotation_round_trip():
    original = AffineTransform(
        position=Vec3(x=1, y=-2, z=3),
        rotation=Vec3(x=0.3, y=-0.4, z=1.1),
        scale=Vec3(x=2, y=0.5, z=1.5),
    )
    decoded = decompose_matrix(compose_matrix(original))
    assert decoded.position.as_tuple() == pytest.approx(original.position.as_tuple())
    assert decoded.rotation.as_tuple() == pytest.approx(original.rotation.as_tuple())
    assert decoded.scale.as_tuple() == pytest.approx(original.scale.as_tuple())


def test_non_orthonormal_input_uses_best_fit():
    # Shear in the linear part: not decomposable exactly, must not raise.
    t = decode_transform("1 0 0 0.5 1 0 0 0 1 0 0 0")
    assert all(math.isfinite(v) for v in t.rotation.as_tuple())
    assert all(math.isfinite(v) for v in t.scale.as_tuple())
    assert t.matrix == [1.0, 0.0, 0.0, 0.5, 1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0]


def test_degenerate_scale_does_not_raise():
    t = decode_transform("0 0 0 0 1 0 0 0 1 5 5 5")
    assert t.position.as_tuple() == (5.0, 5.0, 5.0)


def test_sixteen_values_are_accepted():
    values = parse_transform_values("1 0 0 0  0 0 1 0  0 -1 0 0  10 0 0 1")
    assert values == parse_transform_values(RX90_TRANSFORM)


@pytest.mark.parametrize("raw", [None, "", "   ", "1 2 3", "a b c d e f g h i j k l", "nan 0 0 0 1 0 0 0 1 0 0 0"])
def test_absent_or_malformed_is_identity(raw):
    t = decode_transform(raw)
    assert np.allclose(transform_matrix(t.matrix), np.eye(4))
    assert t.rotation.as_tuple() == (0.0, 0.0, 0.0)


def test_apply_to_bounds_rotates_and_translates():
    bmin, bmax = apply_to_bounds((0, 0, 0), (1, 2, 3), decode_transform(RX90_TRANSFORM))
    # Rx(90): y -> z, z -> -y
    assert bmin == pytest.approx([10, -3, 0])
    assert bmax == pytest.approx([11, 0, 2])


def _item(object_id, transform=None):
    return BuildItem(object_id=object_id, transform=decode_transform(transform))


def test_matching_item_wins_over_first():
    items = [_item("5", "1 0 0 0 1 0 0 0 1 100 100 0"), _item("2", RX90_TRANSFORM)]
    placement = resolve_placement(items, "2")
    assert placement.match == "matched"
    assert placement.transform.position.x == pytest.approx(10.0)
    assert placement.diagnostic is None


def test_wrapper_item_matches():
    items = [_item("7"), _item("3", RX90_TRANSFORM)]
    placement = resolve_placement(items, "1", wrapper_ids=["3"])
    assert placement.match == "matched"
    assert placement.build_item is items[1]


def test_unmatched_falls_back_to_first_with_diagnostic():
    items = [_item("5", "1 0 0 0 1 0 0 0 1 100 100 0"), _item("6")]
    placement = resolve_placement(items, "2")
    assert placement.match == "first_item"
    assert placement.transform.position.x == pytest.approx(100.0)
    assert "'2'" in placement.diagnostic


def test_no_build_items_is_identity():
    placement = resolve_placement([], "1")
    assert placement.match == "identity"
    assert placement.transform.position.as_tuple() == (0.0, 0.0, 0.0)
