"""Tests for the haversine geofence validator."""

import math

import pytest

from app.core.exceptions import GeofenceMisconfigured, InvalidCoordinates
from app.models.geofence import Geofence
from app.services.geofence import (distance_meters, ensure_configured,
                                   is_within, parse_coordinates)

POINTS = [
    (19.432608, -99.133209),
    (40.7128, -74.0060),
    (-33.8688, 151.2093),
    (0.0, 0.0),
    (89.9, 179.9),
    (-89.9, -179.9),
]


def _fence(radius=100, lat=19.432608, lon=-99.133209):
    return Geofence(
        organization_id="org",
        name="HQ",
        center_latitude=lat,
        center_longitude=lon,
        radius_meters=radius,
    )


def test_distance_to_self_is_zero():
    for lat, lon in POINTS:
        assert distance_meters(lat, lon, lat, lon) == 0.0


def test_distance_is_symmetric_and_non_negative():
    for a in POINTS:
        for b in POINTS:
            d1 = distance_meters(*a, *b)
            d2 = distance_meters(*b, *a)
            assert d1 >= 0
            assert math.isclose(d1, d2, rel_tol=1e-12, abs_tol=1e-6)


def test_known_distance_one_degree_latitude():
    # One degree of latitude on a 6 371 km sphere ≈ 111 195 m
    assert distance_meters(0, 0, 1, 0) == pytest.approx(111_195, abs=1)


def test_antipodal_points_do_not_blow_up():
    assert distance_meters(0, 0, 0, 180) == pytest.approx(math.pi * 6_371_000, rel=1e-9)


def test_within_includes_two_meter_tolerance():
    # ~0.00090 deg latitude ≈ 100.1 m north of centre
    fence = _fence(radius=100)
    check = is_within(19.432608 + 0.0009, -99.133209, fence)
    assert check.within is True
    assert check.distance_meters == 100

    far = is_within(19.432608 + 0.0010, -99.133209, fence)  # ~111 m
    assert far.within is False
    assert far.distance_meters == 111


def test_within_is_monotonic_in_radius():
    position = (19.4336, -99.1320)
    previous = False
    for radius in range(0, 400, 10):
        within = is_within(*position, _fence(radius=radius)).within
        assert not (previous and not within)
        previous = within
    assert previous is True


def test_zero_radius_fence_accepts_the_centre():
    assert is_within(19.432608, -99.133209, _fence(radius=0)).within is True


@pytest.mark.parametrize(
    "fence",
    [
        _fence(radius=None),
        _fence(lat=None),
        _fence(lon=None),
        _fence(radius=-1),
        _fence(lat=95.0),
    ],
)
def test_misconfigured_geofence_is_a_server_error(fence):
    with pytest.raises(GeofenceMisconfigured) as exc:
        ensure_configured(fence)
    assert exc.value.status_code == 500


def test_parse_coordinates_accepts_numbers_and_numeric_strings():
    assert parse_coordinates("19.5", -99) == (19.5, -99.0)


@pytest.mark.parametrize(
    "lat, lon",
    [
        ("abc", "1"),
        (None, 1),
        ("nan", 1),
        (float("inf"), 1),
        (91, 0),
        (0, -181),
        (True, 0),
    ],
)
def test_parse_coordinates_rejects_invalid(lat, lon):
    with pytest.raises(InvalidCoordinates):
        parse_coordinates(lat, lon)
