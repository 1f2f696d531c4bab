"""
Route optimization: sequencing, leg pairing, totals and provider failures.
"""
import httpx
import pytest

from optiroute.core.errors import UnexpectedError, UpstreamProviderError
from optiroute.features.routing.here_client import (
    ROUTING_FAILED,
    SEQUENCING_FAILED,
    HereRouter,
)
from optiroute.features.routing.service import assign_ids, build_legs, optimize_route, order_waypoints
from optiroute.models.route import Waypoint
from optiroute.tests.mocks import (
    ROUTE_HOST,
    SEQUENCE_HOST,
    FakeHere,
    FakeRouter,
    route_payload,
    sequence_payload,
)

ORIGIN = Waypoint(id="origin", lat=40.0, lng=-74.0)
DESTINATION = Waypoint(id="destination", lat=40.5, lng=-74.5)
STOP_A = Waypoint(id="a", lat=40.1, lng=-74.1)
STOP_B = Waypoint(id="b", lat=40.2, lng=-74.2)


def _sequence(*ordered):
    # Deliberately out of order: the optimizer must sort by `sequence`
    entries = [(wp.id, wp.lat, wp.lng, index) for index, wp in enumerate(ordered)]
    return sequence_payload(list(reversed(entries)))["results"][0]["waypoints"]


def test_assign_ids_fills_missing_ids():
    origin, destination, vias = assign_ids(
        Waypoint(lat=1.0, lng=1.0),
        Waypoint(lat=2.0, lng=2.0),
        [Waypoint(lat=3.0, lng=3.0), Waypoint(id="kept", lat=4.0, lng=4.0)],
    )
    assert origin.id == "origin"
    assert destination.id == "destination"
    assert [v.id for v in vias] == ["via-0", "kept"]


def test_order_waypoints_sorts_by_sequence():
    ordered = order_waypoints(_sequence(ORIGIN, STOP_B, STOP_A, DESTINATION), ["origin", "a", "b", "destination"])
    assert [wp.id for wp in ordered] == ["origin", "b", "a", "destination"]


def test_order_waypoints_rejects_unknown_ids():
    with pytest.raises(UpstreamProviderError) as exc:
        order_waypoints(_sequence(ORIGIN, Waypoint(id="zzz", lat=0.0, lng=0.0), DESTINATION), ["origin", "a", "destination"])
    assert exc.value.code == "sequencing_failed"


def test_order_waypoints_rejects_count_mismatch():
    with pytest.raises(UpstreamProviderError):
        order_waypoints(_sequence(ORIGIN, DESTINATION), ["origin", "a", "destination"])


def test_order_waypoints_rejects_malformed_entries():
    with pytest.raises(UpstreamProviderError) as exc:
        order_waypoints([{"id": "origin", "lat": 1.0}], ["origin"])
    assert exc.value.message == SEQUENCING_FAILED


def test_build_legs_requires_one_section_per_leg():
    with pytest.raises(UpstreamProviderError) as exc:
        build_legs(route_payload(1)["routes"][0], [ORIGIN, STOP_A, DESTINATION])
    assert exc.value.code == "routing_failed"


@pytest.mark.asyncio
async def test_optimize_route_pairs_legs_with_ordered_waypoints():
    router = FakeRouter(_sequence(ORIGIN, STOP_B, STOP_A, DESTINATION), route_payload(3, duration=600, length=5000)["routes"][0])

    result = await optimize_route(router, ORIGIN, DESTINATION, [STOP_A, STOP_B])

    ids = [wp.id for wp in result.ordered_waypoints]
    assert ids == ["origin", "b", "a", "destination"]
    assert len(result.legs) == len(result.ordered_waypoints) - 1
    for index, leg in enumerate(result.legs):
        assert leg.departure.original_id == ids[index]
        assert leg.arrival.original_id == ids[index + 1]

    # Routing is requested through the optimized order
    origin, destination, vias = router.route_calls[0]
    assert (origin.id, destination.id) == ("origin", "destination")
    assert [v.id for v in vias] == ["b", "a"]


@pytest.mark.asyncio
async def test_totals_are_sums_of_section_summaries():
    router = FakeRouter(_sequence(ORIGIN, STOP_A, DESTINATION), route_payload(2, duration=300, length=1200)["routes"][0])

    result = await optimize_route(router, ORIGIN, DESTINATION, [STOP_A])

    assert result.total_duration_seconds == 600
    assert result.total_length_meters == 2400


@pytest.mark.asyncio
async def test_no_via_stops_gives_single_leg():
    router = FakeRouter(_sequence(ORIGIN, DESTINATION), route_payload(1)["routes"][0])

    result = await optimize_route(router, ORIGIN, DESTINATION)

    assert len(result.legs) == 1
    assert router.sequence_calls[0][2] == []


@pytest.mark.asyncio
async def test_response_shape_uses_camel_case():
    router = FakeRouter(_sequence(ORIGIN, STOP_A, DESTINATION), route_payload(2)["routes"][0])

    body = (await optimize_route(router, ORIGIN, DESTINATION, [STOP_A])).to_response()

    assert set(body) == {"optimizedWaypointDetails", "routeSections", "totalDuration", "totalLength"}
    section = body["routeSections"][0]
    assert section["departure"]["originalId"] == "origin"
    assert section["arrival"]["originalId"] == "a"
    assert section["actions"][0]["instruction"] == "Head east."
    assert body["optimizedWaypointDetails"][0] == {"id": "origin", "lat": 40.0, "lng": -74.0}


# HERE HTTP client


@pytest.fixture
def here():
    return FakeHere()


@pytest.fixture
def router(here):
    return HereRouter("here-key", here.client())


@pytest.mark.asyncio
async def test_find_sequence_request_parameters(here, router):
    here.respond(SEQUENCE_HOST, sequence_payload([("origin", 40.0, -74.0, 0), ("a", 40.1, -74.1, 1), ("destination", 40.5, -74.5, 2)]))

    await router.find_sequence(ORIGIN, DESTINATION, [STOP_A])

    params = here.calls_to(SEQUENCE_HOST)[0].url.params
    assert params["start"] == "origin;40.0,-74.0"
    assert params["end"] == "destination;40.5,-74.5"
    assert params["destination1"] == "a;40.1,-74.1"
    assert params["mode"] == "fastest;car"
    assert params["apiKey"] == "here-key"


@pytest.mark.asyncio
async def test_calculate_route_request_parameters(here, router):
    here.respond(ROUTE_HOST, route_payload(3))

    await router.calculate_route(ORIGIN, DESTINATION, [STOP_B, STOP_A])

    params = here.calls_to(ROUTE_HOST)[0].url.params
    assert params["origin"] == "40.0,-74.0"
    assert params["destination"] == "40.5,-74.5"
    assert params.get_list("via") == ["40.2,-74.2", "40.1,-74.1"]
    assert params["transportMode"] == "car"
    assert params["routingMode"] == "fast"
    assert params["return"] == "polyline,summary,actions,instructions"


@pytest.mark.asyncio
async def test_sequencing_failure_keeps_provider_details(here, router):
    here.respond(SEQUENCE_HOST, {"faultCode": "Unauthorized"}, status=401)

    with pytest.raises(UpstreamProviderError) as exc:
        await router.find_sequence(ORIGIN, DESTINATION, [])

    assert exc.value.message == SEQUENCING_FAILED
    assert exc.value.details == "Unauthorized"
    assert exc.value.provider_status == 401


@pytest.mark.asyncio
async def test_empty_sequence_result_is_failure(here, router):
    here.respond(SEQUENCE_HOST, {"results": []})

    with pytest.raises(UpstreamProviderError) as exc:
        await router.find_sequence(ORIGIN, DESTINATION, [])
    assert exc.value.code == "sequencing_failed"


@pytest.mark.asyncio
async def test_routing_failure_keeps_provider_details(here, router):
    here.respond(ROUTE_HOST, {"title": "Route not found", "cause": "no road"}, status=400)

    with pytest.raises(UpstreamProviderError) as exc:
        await router.calculate_route(ORIGIN, DESTINATION, [])

    assert exc.value.message == ROUTING_FAILED
    assert exc.value.details == "Route not found"


@pytest.mark.asyncio
async def test_network_failure_is_unexpected(here, router):
    here.fail(ROUTE_HOST, httpx.ReadTimeout("timed out"))

    with pytest.raises(UnexpectedError):
        await router.calculate_route(ORIGIN, DESTINATION, [])


@pytest.mark.asyncio
async def test_visiting_order_follows_provider_sequence():
    a, b = Waypoint(id="A", lat=1.0, lng=1.0), Waypoint(id="B", lat=9.0, lng=9.0)
    c, d = Waypoint(id="C", lat=3.0, lng=3.0), Waypoint(id="D", lat=2.0, lng=2.0)
    router = FakeRouter(_sequence(a, d, c, b), route_payload(3)["routes"][0])

    result = await optimize_route(router, a, b, [c, d])

    assert [wp.id for wp in result.ordered_waypoints] == ["A", "D", "C", "B"]
    assert len(result.legs) == 3
    sent_ids = {"A", "B", "C", "D"}
    assert all(leg.departure.original_id in sent_ids and leg.arrival.original_id in sent_ids for leg in result.legs)
