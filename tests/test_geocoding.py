import pytest
import requests

import geocoding
from errors import GeocodingFailure
from geocoding import (
    GoogleGeocoder,
    NominatimGeocoder,
    build_geocoder,
    country_hint_from_string,
    get_country_code,
)

from fakes import FakeHttpResponse, FakeSession


def google_hit(formatted, country, lat=48.2, lng=16.4, location_type="ROOFTOP"):
    return {
        "formatted_address": formatted,
        "geometry": {"location": {"lat": lat, "lng": lng}, "location_type": location_type},
        "address_components": [
            {"short_name": country, "types": ["country", "political"]},
        ],
    }


def google_response(*results, status="OK"):
    return FakeHttpResponse(payload={"status": status, "results": list(results)})


def test_country_codes():
    assert get_country_code("Austria") == "AT"
    assert get_country_code("österreich") == "AT"
    assert get_country_code("at") == "AT"
    assert get_country_code("Narnia") is None
    assert get_country_code(None) is None


def test_country_hint_uses_whole_words():
    assert country_hint_from_string("Gran Via 1, Madrid, Spain") == "ES"
    assert country_hint_from_string("Rue de Rivoli, Paris, FR") == "FR"
    assert country_hint_from_string("Plusstrasse 1, Wien") is None


def test_google_without_region_uses_single_lookup():
    session = FakeSession([google_response(google_hit("Salmgasse 10, 1030 Wien, Austria", "AT"))])
    geocoder = GoogleGeocoder(api_key="test-key", session=session)
    result = geocoder.geocode("Salmgasse 10")
    assert result.formatted_address == "Salmgasse 10, 1030 Wien, Austria"
    assert result.confidence == 1.0
    assert result.country_code == "AT"
    assert len(session.gets) == 1
    assert "region" not in session.gets[0]["params"]


def test_google_region_adds_bias_and_fallback_lookup():
    primary = google_hit("Salmgasse 10, 1030 Wien, Austria", "AT")
    session = FakeSession([google_response(primary), google_response(primary)])
    geocoder = GoogleGeocoder(api_key="test-key", session=session)
    result = geocoder.geocode("Salmgasse 10", "AT")
    assert result.formatted_address == "Salmgasse 10, 1030 Wien, Austria"
    assert session.gets[0]["params"]["region"] == "at"
    assert session.gets[0]["params"]["components"] == "country:AT"
    assert "region" not in session.gets[1]["params"]


def test_google_uses_fallback_when_primary_is_empty():
    fallback = google_hit("Calle Mayor 5, Madrid, Spain", "ES", location_type="APPROXIMATE")
    session = FakeSession([google_response(status="ZERO_RESULTS"), google_response(fallback)])
    result = GoogleGeocoder(api_key="test-key", session=session).geocode("Calle Mayor 5", "AT")
    assert result.formatted_address == "Calle Mayor 5, Madrid, Spain"
    assert result.confidence == 0.4


def test_google_uses_fallback_when_primary_is_in_wrong_country():
    primary = google_hit("Hauptstrasse 1, Berlin, Germany", "DE")
    fallback = google_hit("Hauptstrasse 1, Wien, Austria", "AT")
    session = FakeSession([google_response(primary), google_response(fallback)])
    result = GoogleGeocoder(api_key="test-key", session=session).geocode("Hauptstrasse 1", "AT")
    assert result.formatted_address == "Hauptstrasse 1, Wien, Austria"


def test_google_prefers_explicit_country_in_address():
    primary = google_hit("Gran Via 1, Wien, Austria", "AT")
    fallback = google_hit("Gran Via 1, Madrid, Spain", "ES")
    session = FakeSession([google_response(primary), google_response(fallback)])
    result = GoogleGeocoder(api_key="test-key", session=session).geocode("Gran Via 1, Madrid, Spain", "AT")
    assert result.country_code == "ES"


def test_google_request_denied_raises():
    session = FakeSession([google_response(status="REQUEST_DENIED")])
    with pytest.raises(GeocodingFailure):
        GoogleGeocoder(api_key="bad", session=session).geocode("Salmgasse 10")


def test_google_without_key_raises(monkeypatch):
    monkeypatch.setattr(geocoding.Config, "GOOGLE_MAPS_API_KEY", None)
    with pytest.raises(GeocodingFailure):
        GoogleGeocoder(session=FakeSession([])).geocode("Salmgasse 10")


def test_batch_turns_transport_errors_into_none():
    hit = google_hit("Prater 1, 1020 Wien, Austria", "AT")
    session = FakeSession([requests.ConnectionError("reset"), google_response(hit)])
    results = GoogleGeocoder(api_key="test-key", session=session).geocode_batch(["Salmgasse 10", "Prater 1"])
    assert results[0] is None
    assert results[1].formatted_address == "Prater 1, 1020 Wien, Austria"


def test_nominatim_lookup(monkeypatch):
    calls = []

    def fake_get(url, params=None, headers=None, timeout=None):
        calls.append({"params": params, "headers": headers})
        return FakeHttpResponse(
            payload=[
                {
                    "lat": "48.2",
                    "lon": "16.39",
                    "display_name": "Salmgasse 10, Landstrasse, Wien, 1030, Österreich",
                    "address": {"road": "Salmgasse", "house_number": "10", "country_code": "at"},
                }
            ]
        )

    monkeypatch.setattr(geocoding.requests, "get", fake_get)
    geocoder = NominatimGeocoder(user_agent="tests", delay=0)
    result = geocoder.geocode("Salmgasse 10, Wien", "AT")
    assert result.lat == 48.2
    assert result.lng == 16.39
    assert result.confidence == 0.8
    assert result.country_code == "AT"
    assert calls[0]["params"]["countrycodes"] == "at"
    assert calls[0]["headers"] == {"User-Agent": "tests"}


def test_nominatim_no_hit(monkeypatch):
    monkeypatch.setattr(geocoding.requests, "get", lambda *args, **kwargs: FakeHttpResponse(payload=[]))
    assert NominatimGeocoder(delay=0).geocode("Nowhere") is None


def test_build_geocoder():
    assert isinstance(build_geocoder("google"), GoogleGeocoder)
    assert isinstance(build_geocoder("osm"), NominatimGeocoder)
    assert build_geocoder("none") is None
    with pytest.raises(ValueError):
        build_geocoder("bing")
