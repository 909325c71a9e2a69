"""
Unit tests for great-circle distance and coordinate validation.
"""
import pytest

from utils.errors import ValidationError
from utils.geo import bounding_box, haversine_distance_m, in_bounding_box, validate_coordinates


def test_identical_points_are_zero_metres_apart():
    assert haversine_distance_m(40.755, -74.01, 40.755, -74.01) == 0.0


def test_one_degree_of_latitude():
    """One degree along a meridian is roughly 111.2 km on a 6,371 km sphere."""
    distance = haversine_distance_m(0.0, 0.0, 1.0, 0.0)
    assert distance == pytest.approx(111_195, rel=1e-3)


def test_distance_is_symmetric():
    a = haversine_distance_m(40.7550, -74.0100, 40.7568, -74.0100)
    b = haversine_distance_m(40.7568, -74.0100, 40.7550, -74.0100)
    assert a == pytest.approx(b)
    assert a == pytest.approx(200, rel=0.01)


def test_bounding_box_contains_radius():
    min_lat, max_lat, min_lng, max_lng = bounding_box(40.755, -74.01, 50)
    assert min_lat < 40.755 < max_lat
    assert min_lng < -74.01 < max_lng
    # Box edges sit at the radius along each axis.
    assert haversine_distance_m(40.755, -74.01, max_lat, -74.01) == pytest.approx(50, rel=1e-6)
    assert haversine_distance_m(40.755, -74.01, 40.755, max_lng) == pytest.approx(50, rel=1e-3)


def test_bounding_box_at_pole_spans_all_longitudes():
    _, _, min_lng, max_lng = bounding_box(90.0, 0.0, 100)
    assert max_lng - min_lng == pytest.approx(360.0)


def test_box_containment_wraps_across_the_antimeridian():
    box = bounding_box(0.0, 179.9999, 50)
    assert haversine_distance_m(0.0, 179.9999, 0.0, -179.9999) == pytest.approx(22.2, rel=0.01)
    assert in_bounding_box(box, 0.0, -179.9999)
    assert in_bounding_box(box, 0.0, 179.9999)
    assert not in_bounding_box(box, 0.0, -179.99)
    assert not in_bounding_box(box, 0.01, 179.9999)


def test_box_containment_away_from_the_antimeridian():
    box = bounding_box(40.755, -74.01, 50)
    assert in_bounding_box(box, 40.7552, -74.0102)
    assert not in_bounding_box(box, 40.7568, -74.01)
    assert not in_bounding_box(box, 40.755, 105.99)


def test_validate_coordinates_accepts_numeric_strings():
    assert validate_coordinates("40.5", "-74.25") == (40.5, -74.25)


@pytest.mark.parametrize(
    "lat,lng",
    [(None, 1.0), ("north", 1.0), (91.0, 0.0), (0.0, -181.0), (float("nan"), 0.0)],
)
def test_validate_coordinates_rejects_bad_input(lat, lng):
    with pytest.raises(ValidationError):
        validate_coordinates(lat, lng)
