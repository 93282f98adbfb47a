import json

import pytest

from journey.geo import Coordinate, distance_m
from journey.secrets import (
    Secret,
    get_secret,
    load_catalog,
    parse_catalog,
    secrets_for_mission,
    secrets_near,
)


PYRAMID_SECRET = Coordinate(29.9795, 31.1342)


def test_bundled_catalog_has_the_five_sites(app):
    catalog = load_catalog()
    assert [secret.id for secret in catalog] == [
        "secret_pyramids_inscription",
        "secret_sphinx_whisper",
        "secret_khan_coffee",
        "secret_museum_hidden_chamber",
        "secret_luxor_temple_inscription",
    ]
    inscription = get_secret("secret_pyramids_inscription")
    assert inscription.radius_m == 50
    assert (inscription.xp_reward, inscription.gold_reward) == (50, 25)
    assert inscription.rarity_percent == 2


def test_catalog_loads_without_app_context():
    assert len(load_catalog()) == 5


def test_observer_on_the_secret_finds_it(app):
    found = secrets_near(PYRAMID_SECRET)
    assert [secret.id for secret in found] == ["secret_pyramids_inscription"]


def test_observer_a_kilometre_away_finds_nothing(app):
    observer = Coordinate(29.9795 + 0.009, 31.1342)
    assert distance_m(observer, PYRAMID_SECRET) == pytest.approx(1000, rel=0.01)
    assert secrets_near(observer) == []


def test_radius_boundary_is_inclusive():
    observer = Coordinate(29.98, 31.14)
    location = Coordinate(29.9795, 31.1342)
    r = distance_m(observer, location)
    on_edge = Secret(id="edge", mission_id="m", location=location, radius_m=r)
    just_short = Secret(id="short", mission_id="m", location=location, radius_m=r * (1 - 1e-9))

    assert secrets_near(observer, [on_edge, just_short]) == [on_edge]


def test_secrets_for_mission_filters_without_geometry(app):
    assert [s.id for s in secrets_for_mission("mission_pyramids")] == [
        "secret_pyramids_inscription",
        "secret_sphinx_whisper",
    ]
    assert secrets_for_mission("mission_unknown") == []


def test_get_secret_unknown_id(app):
    assert get_secret("nope") is None
    assert get_secret("") is None


def test_parse_catalog_skips_malformed_and_duplicate_entries():
    payload = {
        "secrets": [
            {"id": "ok", "mission_id": "m1", "location": {"lat": 1, "lng": 2}, "radius_m": 10},
            {"id": "ok", "mission_id": "m1", "location": {"lat": 1, "lng": 2}, "radius_m": 10},
            {"id": "no_location", "mission_id": "m1", "radius_m": 10},
            {"id": "negative", "mission_id": "m1", "location": {"lat": 1, "lng": 2}, "radius_m": -5},
            {"mission_id": "m1", "location": {"lat": 1, "lng": 2}},
            "not a dict",
        ]
    }
    catalog = parse_catalog(payload)
    assert [secret.id for secret in catalog] == ["ok"]


def test_configured_catalog_path_is_used_and_reloaded(app, tmp_path):
    path = tmp_path / "secrets.json"
    path.write_text(
        json.dumps({"secrets": [{"id": "s1", "mission_id": "m1", "location": {"lat": 0, "lng": 0}, "radius_m": 5}]}),
        encoding="utf-8",
    )
    app.config["JOURNEY_SECRETS_PATH"] = str(path)
    assert [secret.id for secret in load_catalog()] == ["s1"]

    path.write_text(
        json.dumps({"secrets": [{"id": "s2", "mission_id": "m1", "location": {"lat": 0, "lng": 0}, "radius_m": 5}]}),
        encoding="utf-8",
    )
    assert [secret.id for secret in load_catalog(force_refresh=True)] == ["s2"]


def test_missing_catalog_falls_back_to_bundled(app, tmp_path):
    app.config["JOURNEY_SECRETS_PATH"] = str(tmp_path / "missing.json")
    assert len(load_catalog()) == 5


def test_secret_is_immutable(app):
    secret = load_catalog()[0]
    with pytest.raises(AttributeError):
        secret.radius_m = 1000
