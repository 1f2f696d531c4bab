"""
HERE geocoding client: request shape, caching and error taxonomy.
"""
import httpx
import pytest

from optiroute.core.errors import NotFoundError, UnexpectedError, UpstreamProviderError, ValidationError
from optiroute.features.geocoding.cache import GeocodeCache
from optiroute.features.geocoding.here_client import HereGeocoder
from optiroute.tests.mocks import GEOCODE_HOST, REVGEOCODE_HOST, FakeHere, geocode_payload


@pytest.fixture
def here():
    return FakeHere()


@pytest.fixture
def geocoder(here):
    return HereGeocoder("here-key", here.client(), cache=GeocodeCache())


@pytest.mark.asyncio
async def test_geocode_returns_first_item(here, geocoder):
    here.respond(GEOCODE_HOST, geocode_payload(52.53, 13.38, "Invalidenstraße 116, Berlin"))

    result = await geocoder.geocode("invalidenstr 116 berlin")

    assert (result.lat, result.lng) == (52.53, 13.38)
    assert result.address == "Invalidenstraße 116, Berlin"
    request = here.calls_to(GEOCODE_HOST)[0]
    assert request.url.params["q"] == "invalidenstr 116 berlin"
    assert request.url.params["apiKey"] == "here-key"


@pytest.mark.asyncio
async def test_repeat_lookup_is_served_from_cache(here, geocoder):
    here.respond(GEOCODE_HOST, geocode_payload(1.5, 2.5, "Main St"))

    first = await geocoder.geocode("1 Main St")
    second = await geocoder.geocode("  1 MAIN ST ")

    assert first == second
    assert len(here.calls_to(GEOCODE_HOST)) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("address", ["", "   ", None])
async def test_empty_address_is_rejected_without_provider_call(here, geocoder, address):
    with pytest.raises(ValidationError):
        await geocoder.geocode(address)
    assert here.requests == []


@pytest.mark.asyncio
async def test_no_items_is_not_found(here, geocoder):
    here.respond(GEOCODE_HOST, {"items": []})

    with pytest.raises(NotFoundError) as exc:
        await geocoder.geocode("nowhere at all")
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_not_found_is_not_cached(here, geocoder):
    here.respond(GEOCODE_HOST, {"items": []})
    with pytest.raises(NotFoundError):
        await geocoder.geocode("nowhere")

    here.respond(GEOCODE_HOST, geocode_payload(1.0, 1.0, "Somewhere"))
    result = await geocoder.geocode("nowhere")
    assert result.address == "Somewhere"


@pytest.mark.asyncio
async def test_provider_error_keeps_provider_message(here, geocoder):
    here.respond(GEOCODE_HOST, {"error": "Unauthorized", "error_description": "apiKey invalid"}, status=401)

    with pytest.raises(UpstreamProviderError) as exc:
        await geocoder.geocode("1 Main St")

    assert exc.value.message == "Failed to geocode address."
    assert exc.value.details == "apiKey invalid"
    assert exc.value.provider_status == 401
    assert exc.value.status_code == 500


@pytest.mark.asyncio
async def test_non_json_error_page_is_provider_error(here, geocoder):
    here.respond(GEOCODE_HOST, lambda request: httpx.Response(502, text="<html>Bad Gateway</html>"))

    with pytest.raises(UpstreamProviderError) as exc:
        await geocoder.geocode("1 Main St")

    assert exc.value.code == "upstream_error"
    assert exc.value.provider_status == 502
    assert exc.value.message == "Failed to geocode address."


@pytest.mark.asyncio
async def test_non_json_error_page_on_reverse_geocode_is_provider_error(here, geocoder):
    here.respond(REVGEOCODE_HOST, lambda request: httpx.Response(503, text="Service Unavailable"))

    with pytest.raises(UpstreamProviderError) as exc:
        await geocoder.reverse_geocode(52.5, 13.4)

    assert exc.value.provider_status == 503


@pytest.mark.asyncio
async def test_unparseable_success_body_is_unexpected(here, geocoder):
    here.respond(GEOCODE_HOST, lambda request: httpx.Response(200, text="not json"))

    with pytest.raises(UnexpectedError):
        await geocoder.geocode("1 Main St")


@pytest.mark.asyncio
async def test_network_failure_is_unexpected(here, geocoder):
    here.fail(GEOCODE_HOST, httpx.ConnectError("connection refused"))

    with pytest.raises(UnexpectedError):
        await geocoder.geocode("1 Main St")


@pytest.mark.asyncio
async def test_item_without_position_is_unexpected(here, geocoder):
    here.respond(GEOCODE_HOST, {"items": [{"title": "No position"}]})

    with pytest.raises(UnexpectedError):
        await geocoder.geocode("1 Main St")


@pytest.mark.asyncio
async def test_reverse_geocode_returns_label(here, geocoder):
    here.respond(REVGEOCODE_HOST, {"items": [{"address": {"label": "Pariser Platz, Berlin"}}]})

    label = await geocoder.reverse_geocode(52.516, 13.377)

    assert label == "Pariser Platz, Berlin"
    assert here.calls_to(REVGEOCODE_HOST)[0].url.params["at"] == "52.516,13.377"


@pytest.mark.asyncio
async def test_reverse_geocode_without_result_is_not_found(here, geocoder):
    here.respond(REVGEOCODE_HOST, {"items": []})

    with pytest.raises(NotFoundError):
        await geocoder.reverse_geocode(0.0, 0.0)


@pytest.mark.asyncio
async def test_reverse_geocode_provider_error(here, geocoder):
    here.respond(REVGEOCODE_HOST, {"title": "Malformed request"}, status=400)

    with pytest.raises(UpstreamProviderError) as exc:
        await geocoder.reverse_geocode(1.0, 2.0)
    assert exc.value.details == "Malformed request"
    assert exc.value.provider_status == 400
