import httpx
import pytest

from guardian.service.geo import LOCAL, UNKNOWN, GeoLocation, GeoResolver


def _resolver(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return GeoResolver("https://geo.example/{ip}/json", client=client)


@pytest.mark.parametrize(
    "address",
    ["127.0.0.1", "::1", "0:0:0:0:0:0:0:1", "localhost", "10.0.0.5", "192.168.1.20", "172.16.4.4", "fe80::1"],
)
def test_local_addresses(address):
    assert GeoResolver().locate(address) == LOCAL


@pytest.mark.parametrize("address", [None, "", "unknown", "not-an-ip"])
def test_unresolvable_addresses(address):
    assert GeoResolver().locate(address) == UNKNOWN


def test_static_table():
    resolver = GeoResolver()
    assert resolver.locate("8.8.8.8") == GeoLocation("US", "Mountain View")
    assert resolver.locate("1.1.1.1") == GeoLocation("US", "San Francisco")


def test_public_address_without_lookup_url_is_unknown():
    assert GeoResolver().locate("81.2.69.50") == UNKNOWN


def test_http_lookup_is_cached():
    calls = []

    def handler(request):
        calls.append(str(request.url))
        return httpx.Response(200, json={"country_name": "Germany", "city": "Berlin"})

    resolver = _resolver(handler)

    assert resolver.locate("81.2.69.50") == GeoLocation("Germany", "Berlin")
    assert resolver.locate("81.2.69.50") == GeoLocation("Germany", "Berlin")
    assert calls == ["https://geo.example/81.2.69.50/json"]
    resolver.close()


def test_http_lookup_without_city():
    resolver = _resolver(lambda request: httpx.Response(200, json={"country": "FR"}))
    assert resolver.locate("81.2.69.51") == GeoLocation("FR", "Unknown")


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "boom"}),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json=["unexpected"]),
        httpx.Response(200, json={"city": "Nowhere"}),
    ],
)
def test_http_lookup_failures_resolve_to_unknown(response):
    resolver = _resolver(lambda request: response)
    assert resolver.locate("81.2.69.52") == UNKNOWN


def test_transport_errors_resolve_to_unknown():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    resolver = _resolver(handler)
    assert resolver.locate("81.2.69.53") == UNKNOWN
