import pytest

from ridematch import directory, journeys, matching
from ridematch.auth import Caller
from ridematch.errors import StateConflictError, ValidationError
from conftest import COLOMBO

pytestmark = pytest.mark.anyio


def near(km_north):
    # ~111.2 km per degree of latitude
    return (COLOMBO[0] + km_north / 111.2, COLOMBO[1])


def test_score_weights_distance_rating_and_vehicle():
    score, breakdown = matching.score_driver(0.0, 5.0, 5.0, "car", "car")
    assert score == pytest.approx(1.0)
    score, breakdown = matching.score_driver(2.5, 5.0, 2.5, "van", "car")
    assert breakdown == {"distance_score": 0.5, "rating_score": 0.5, "vehicle_type_score": 0.5}
    assert score == pytest.approx(0.6 * 0.5 + 0.3 * 0.5 + 0.1 * 0.5)


def test_restricted_eligibility_needs_gender_and_opt_in():
    assert matching.is_restricted_eligible({"gender": "Female", "accepts_restricted_rides": True})
    assert not matching.is_restricted_eligible({"gender": "female", "accepts_restricted_rides": False})
    assert not matching.is_restricted_eligible({"gender": "male", "accepts_restricted_rides": True})
    assert not matching.is_restricted_eligible({"gender": None, "accepts_restricted_rides": True})


async def test_matching_excludes_far_unavailable_and_unknown_drivers(conn, make_driver, fake_redis):
    await make_driver(1, near(1.0))
    await make_driver(2, near(10.0))
    await make_driver(3, near(0.5), available=False)
    await make_driver(4, location=None)
    await directory.update_driver_location(5, *near(0.5))  # position but no directory profile
    await make_driver(6, near(0.8))
    fake_redis.hashes[directory.driver_key(6)]["timestamp"] = "0"  # stale position

    matches = await matching.find_matches(conn, COLOMBO, radius_km=5.0)

    assert [m["driver"]["id"] for m in matches] == [1]
    assert matches[0]["distance_km"] == pytest.approx(1.0, abs=0.01)


async def test_restricted_requests_only_match_opted_in_women(conn, make_driver):
    await make_driver(1, near(1.0), gender="female", accepts_restricted_rides=True)
    await make_driver(2, near(0.5), gender="female", accepts_restricted_rides=False)
    await make_driver(3, near(0.5), gender="male", accepts_restricted_rides=True)

    restricted = await matching.find_matches(conn, COLOMBO, restricted=True)
    assert [m["driver"]["id"] for m in restricted] == [1]

    everyone = await matching.find_matches(conn, COLOMBO)
    assert {m["driver"]["id"] for m in everyone} == {1, 2, 3}


async def test_matches_are_ranked_best_first(conn, make_driver):
    await make_driver(1, near(3.0), rating=3.0, vehicle_type="van")
    await make_driver(2, near(0.5), rating=4.8, vehicle_type="car")
    await make_driver(3, near(1.5), rating=4.0, vehicle_type="car")

    matches = await matching.find_matches(conn, COLOMBO, preferred_vehicle_type="car")

    assert [m["driver"]["id"] for m in matches] == [2, 3, 1]
    scores = [m["score"] for m in matches]
    assert scores == sorted(scores, reverse=True)


async def test_no_candidates_is_an_empty_list(conn):
    assert await matching.find_matches(conn, COLOMBO) == []


async def test_bad_input_is_a_validation_error(conn):
    with pytest.raises(ValidationError):
        await matching.find_matches(conn, (95.0, 79.86))
    with pytest.raises(ValidationError):
        await matching.find_matches(conn, None)
    with pytest.raises(ValidationError):
        await matching.find_matches(conn, COLOMBO, radius_km=0)


async def test_match_journey_uses_journey_constraints(conn, make_driver, make_journey):
    await make_driver(1, near(1.0), gender="male")
    await make_driver(2, near(2.0), gender="female", accepts_restricted_rides=True)
    journey = await make_journey(100, is_restricted=True)

    matches = await matching.match_journey(conn, journey["id"])
    assert [m["driver"]["id"] for m in matches] == [2]

    await journeys.cancel_journey(conn, Caller(100, "passenger"), journey["id"])
    with pytest.raises(StateConflictError):
        await matching.match_journey(conn, journey["id"])
