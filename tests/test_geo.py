import pytest

from journey.geo import Coordinate, distance_m


GIZA = Coordinate(29.9795, 31.1342)
KHAN = Coordinate(30.0475, 31.2623)
LUXOR = Coordinate(25.6994, 32.6392)


@pytest.mark.parametrize("a, b", [(GIZA, KHAN), (KHAN, LUXOR), (GIZA, LUXOR), (Coordinate(-33.9, 18.4), Coordinate(51.5, -0.1))])
def test_distance_is_symmetric(a, b):
    assert distance_m(a, b) == distance_m(b, a)


@pytest.mark.parametrize("point", [GIZA, KHAN, Coordinate(0.0, 0.0), Coordinate(-89.9, 179.9)])
def test_distance_to_self_is_zero(point):
    assert distance_m(point, point) == 0


def test_one_degree_of_longitude_on_equator():
    assert distance_m(Coordinate(0, 0), Coordinate(0, 1)) == pytest.approx(111195, rel=1e-3)


def test_giza_to_khan_el_khalili_is_about_fourteen_and_a_half_km():
    assert distance_m(GIZA, KHAN) == pytest.approx(14_470, rel=0.01)


def test_antipodal_points_stay_finite():
    assert distance_m(Coordinate(0, 0), Coordinate(0, 180)) == pytest.approx(20_015_087, rel=1e-4)


def test_coordinate_from_dict_accepts_both_key_styles():
    assert Coordinate.from_dict({"lat": "29.9", "lng": 31.1}) == Coordinate(29.9, 31.1)
    assert Coordinate.from_dict({"latitude": 1, "longitude": 2}) == Coordinate(1.0, 2.0)
    assert Coordinate.from_dict({"lat": "north"}) is None
    assert Coordinate.from_dict(None) is None


def test_coordinate_from_dict_rejects_non_finite_values():
    assert Coordinate.from_dict({"lat": float("nan"), "lng": 31.1}) is None
    assert Coordinate.from_dict({"lat": 29.9, "lng": float("inf")}) is None
    assert Coordinate.from_dict({"lat": "-Infinity", "lng": 31.1}) is None
