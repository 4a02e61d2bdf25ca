import pytest

from clearlayer.geometry import fit_contain, map_display_to_natural, map_natural_to_display


def test_wide_container_centres_horizontally():
    box = fit_contain(400, 300, 800, 300)
    assert box.display_h == 300
    assert box.display_w == pytest.approx(400)
    assert box.offset_x == pytest.approx(200)
    assert box.offset_y == 0


def test_tall_container_centres_vertically():
    box = fit_contain(400, 300, 200, 600)
    assert box.display_w == 200
    assert box.display_h == pytest.approx(150)
    assert box.offset_y == pytest.approx(225)
    assert box.offset_x == 0


@pytest.mark.parametrize(
    "natural,container",
    [((1920, 1080), (900, 700)), ((600, 1200), (900, 700)), ((333, 333), (500, 120))],
)
def test_round_trip_natural_display_natural(natural, container):
    box = fit_contain(*natural, *container)
    for x, y in [(0.0, 0.0), (natural[0] * 0.37, natural[1] * 0.81), (natural[0], natural[1])]:
        dx, dy = map_natural_to_display(x, y, box)
        back = map_display_to_natural(dx, dy, box)
        assert back is not None
        assert back[0] == pytest.approx(x, abs=1e-6)
        assert back[1] == pytest.approx(y, abs=1e-6)


def test_clicks_in_letterbox_margin_are_ignored():
    box = fit_contain(400, 300, 800, 300)
    assert map_display_to_natural(100, 150, box) is None
    assert map_display_to_natural(700, 150, box) is None
    assert map_display_to_natural(400, 150, box) == pytest.approx((200.0, 150.0))


def test_invalid_sizes_raise():
    with pytest.raises(ValueError):
        fit_contain(0, 10, 10, 10)
    with pytest.raises(ValueError):
        fit_contain(10, 10, 10, 0)
