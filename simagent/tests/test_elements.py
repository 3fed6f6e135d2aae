"""Tests for accessibility tree normalization."""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from simagent.simulator.elements import (
    Element,
    FrameRect,
    NormalizeOptions,
    Transform,
    classify_visibility,
    derive_transform,
    normalize_elements,
)
from simagent.simulator.errors import SimAgentError

from fakes import app_root, node


def test_normalize_reads_nested_idb_frames():
    """Nested frame dicts are read and missing ids fall back to the tree path."""
    raw = [
        {"AXLabel": "Sign in", "role": "AXButton", "frame": {"x": 20, "y": 700, "width": 353, "height": 50}},
        {"AXLabel": "Email", "AXValue": "", "role": "AXTextField", "frame": {"x": 20, "y": 300, "width": 353, "height": 44}},
    ]
    result = normalize_elements(raw, NormalizeOptions(interactive_only=True))

    assert [e.index for e in result] == [1, 2]
    assert [e.label for e in result] == ["Email", "Sign in"]
    assert result.elements[0].id == "axpath:/1"
    assert result.elements[0].text_input
    assert result.interactive_count == 2
    # The bare frame mappings are counted too.
    assert result.all_count == 4
    assert all(e.visible and not e.offscreen for e in result)


def test_normalize_orders():
    """Indices follow the requested order."""
    raw = [
        node("b", "Button", "Bottom", x=0, y=500, w=50, h=50),
        node("a", "Button", "Top", x=0, y=100, w=50, h=50),
    ]
    reading = normalize_elements(raw, NormalizeOptions(order="reading"))
    z = normalize_elements(raw, NormalizeOptions(order="z"))
    stable = normalize_elements(raw, NormalizeOptions(order="stable"))

    assert [e.id for e in reading] == ["a", "b"]
    assert [e.id for e in z] == ["b", "a"]
    assert [e.id for e in stable] == ["a", "b"]
    assert [e.index for e in z] == [1, 2]


def test_normalize_rejects_unknown_order():
    """An unknown order is a usage error."""
    with pytest.raises(SimAgentError) as exc:
        normalize_elements([], NormalizeOptions(order="diagonal"))
    assert exc.value.code == "USAGE"


def test_normalize_filters():
    """Area, role and enabled filters drop elements before counting."""
    raw = [
        node("big", "Button", "Big", x=0, y=0, w=100, h=50),
        node("tiny", "Button", "Tiny", x=0, y=100, w=10, h=10),
        node("off", "Button", "Off", x=0, y=200, w=100, h=50, enabled=False),
        node("lbl", "StaticText", "Hello", x=0, y=300, w=100, h=50),
    ]
    result = normalize_elements(raw, NormalizeOptions(min_area=200, exclude_roles=frozenset({"statictext"})))

    assert [e.id for e in result] == ["big"]
    assert result.all_count == 1
    assert result.interactive_count == 1


def test_normalize_include_roles():
    """Include roles keep only the listed roles."""
    raw = [
        node("btn", "Button", "Go", x=0, y=0, w=100, h=50),
        node("field", "TextField", "Name", x=0, y=100, w=100, h=50),
    ]
    result = normalize_elements(raw, NormalizeOptions(include_roles=frozenset({"textfield"})))
    assert [e.id for e in result] == ["field"]


def test_classify_visibility():
    """Elements inside, straddling and outside the screen."""
    screen = FrameRect(0, 0, 100, 100)

    assert classify_visibility(FrameRect(10, 10, 20, 20), screen) == (True, False)
    assert classify_visibility(FrameRect(-5, 10, 20, 20), screen) == (True, True)
    assert classify_visibility(FrameRect(120, 10, 20, 20), screen) == (False, True)
    assert classify_visibility(FrameRect(10, 10, 0, 20), screen) == (False, True)


def test_classify_visibility_unknown_screen():
    """Without a known screen everything non-degenerate is visible."""
    assert classify_visibility(FrameRect(500, 500, 20, 20), FrameRect(0, 0, 0, 0)) == (True, False)


def test_nearby_label_for_unlabeled_field():
    """An unlabeled field borrows the closest visible label."""
    raw = [
        node("caption", "StaticText", "Height", x=20, y=260, w=100, h=20),
        node("height", "TextField", x=20, y=290, w=353, h=44),
        node("footer", "StaticText", "Footer", x=20, y=800, w=100, h=20),
    ]
    result = normalize_elements(raw)
    field = next(e for e in result if e.id == "height")

    assert field.nearby_label == "Height"
    assert "height" in field.searchable_text()


def test_derive_transform_from_screenshot():
    """Scale is screenshot pixels over screen points."""
    result = normalize_elements([app_root(), node("btn", "Button", "Go", x=20, y=700, w=100, h=44)])
    transform = derive_transform(None, result.elements, (1179, 2556))

    assert transform.screen_w == 393
    assert transform.screen_h == 852
    assert transform.scale == pytest.approx(3.0)
    assert transform.to_points(300, 600) == pytest.approx((100, 200))


def test_transform_rejects_zero_scale():
    """A zero scale cannot convert pixels."""
    with pytest.raises(SimAgentError) as exc:
        Transform(screen_w=0, screen_h=0, scale=0).to_points(1, 1)
    assert exc.value.code == "COORD_TRANSFORM_FAILED"


def test_element_from_dict_reads_elements_json_rows():
    """Rows written to elements.json load back into elements."""
    elem = Element(
        index=3,
        id="email",
        role="TextField",
        label="Email",
        value="a@b.co",
        frame=FrameRect(20, 300, 353, 44),
        offscreen=True,
    )
    loaded = Element.from_dict(elem.to_dict())

    assert loaded.index == 3
    assert loaded.frame == elem.frame
    assert loaded.offscreen
    assert loaded.source == ("idb", "describe-all")


def test_normalize_skips_nodes_without_origin():
    """A size without an origin is not a rect."""
    raw = [
        node("go", "Button", "Go", x=10, y=10, w=50, h=50),
        {"role": "Button", "label": "Size", "width": 393, "height": 852},
    ]
    result = normalize_elements(raw, NormalizeOptions(interactive_only=False))

    assert [e.label for e in result] == ["Go"]
    assert result.all_count == 1


def test_normalize_first_rect_container_wins():
    """An empty frame container is not replaced by the node's own rect."""
    raw = [
        node("go", "Button", "Go", x=10, y=10, w=50, h=50),
        {
            "role": "Button",
            "label": "Zero",
            "frame": {"x": 0, "y": 0, "width": 0, "height": 40},
            "x": 100, "y": 100, "width": 50, "height": 50,
        },
    ]
    result = normalize_elements(raw, NormalizeOptions(interactive_only=False))

    assert [e.label for e in result] == ["Go"]
