import argparse
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import requests

from config import Config
from errors import GeocodingFailure


COUNTRY_CODES = {
    "austria": "AT",
    "österreich": "AT",
    "oesterreich": "AT",
    "germany": "DE",
    "deutschland": "DE",
    "spain": "ES",
    "españa": "ES",
    "espana": "ES",
    "france": "FR",
    "italy": "IT",
    "italia": "IT",
    "switzerland": "CH",
    "schweiz": "CH",
    "suisse": "CH",
    "usa": "US",
    "united states": "US",
    "uk": "GB",
    "united kingdom": "GB",
    "portugal": "PT",
    "netherlands": "NL",
    "holland": "NL",
}

_COUNTRY_NAME_PATTERNS = [
    (re.compile(rf"\b{re.escape(name)}\b"), code) for name, code in COUNTRY_CODES.items()
]
_ISO_TOKEN = re.compile(r"\b([A-Z]{2})\b")

# Google reports how precise a hit is; the agent tools surface it as confidence
LOCATION_TYPE_CONFIDENCE = {
    "ROOFTOP": 1.0,
    "RANGE_INTERPOLATED": 0.8,
    "GEOMETRIC_CENTER": 0.6,
    "APPROXIMATE": 0.4,
}


@dataclass
class GeocodeResult:
    input: str
    formatted_address: str
    lat: Optional[float]
    lng: Optional[float]
    confidence: float = 0.0
    country_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def get_country_code(country: Optional[str]) -> Optional[str]:
    if not country:
        return None
    normalized = str(country).strip()
    if re.fullmatch(r"[A-Za-z]{2}", normalized):
        return normalized.upper()
    return COUNTRY_CODES.get(normalized.lower())


def country_hint_from_string(raw: str) -> Optional[str]:
    """Guess which country an address points at, if it names one."""
    if not raw:
        return None
    lowered = raw.lower()
    for pattern, code in _COUNTRY_NAME_PATTERNS:
        if pattern.search(lowered):
            return code
    match = _ISO_TOKEN.search(raw)
    if match:
        return match.group(1)
    return None


class Geocoder(ABC):
    """Resolves free-form addresses to coordinates."""

    name = "geocoder"

    @abstractmethod
    def geocode(self, address: str, region: Optional[str] = None) -> Optional[GeocodeResult]:
        ...

    def geocode_batch(
        self, addresses: List[str], region: Optional[str] = None
    ) -> List[Optional[GeocodeResult]]:
        results: List[Optional[GeocodeResult]] = []
        for address in addresses:
            try:
                results.append(self.geocode(address, region))
            except requests.RequestException as exc:
                logging.warning("Geocoding failed for '%s': %s", address, exc)
                results.append(None)
        return results


class GoogleGeocoder(Geocoder):
    name = "google"

    def __init__(
        self,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key or Config.GOOGLE_MAPS_API_KEY
        self.url = url or Config.GOOGLE_GEOCODE_URL
        self.timeout = timeout or Config.GEOCODE_TIMEOUT_SEC
        self.session = session or requests.Session()

    def _request(self, address: str, region: Optional[str]) -> Optional[Dict[str, Any]]:
        if not self.api_key:
            raise GeocodingFailure("Google Maps API key is not configured on the server")
        params = {"address": address, "key": self.api_key}
        if region:
            params["region"] = region.lower()
            params["components"] = f"country:{region.upper()}"
        response = self.session.get(self.url, params=params, timeout=self.timeout)
        response.raise_for_status()
        data = response.json()
        status = data.get("status")
        if status in {"REQUEST_DENIED", "OVER_QUERY_LIMIT", "OVER_DAILY_LIMIT"}:
            raise GeocodingFailure(
                f"Google geocoding rejected the request ({status})",
                data.get("error_message"),
            )
        results = data.get("results") or []
        return results[0] if results else None

    @staticmethod
    def _country(result: Optional[Dict[str, Any]]) -> Optional[str]:
        if not result:
            return None
        for component in result.get("address_components") or []:
            if "country" in (component.get("types") or []):
                short_name = component.get("short_name")
                return str(short_name).upper() if short_name else None
        return None

    def _choose(
        self,
        address: str,
        region: Optional[str],
        primary: Optional[Dict[str, Any]],
        fallback: Optional[Dict[str, Any]],
    ) -> Optional[Dict[str, Any]]:
        region_code = region.upper() if region else None
        primary_code = self._country(primary)
        if primary and (not region_code or not primary_code or primary_code == region_code):
            chosen = primary
        else:
            return fallback

        fallback_code = self._country(fallback)
        if fallback and primary_code and fallback_code and primary_code != fallback_code:
            # Both hit but in different countries: trust an explicit country in the text
            preferred = country_hint_from_string(address) or region_code
            if preferred == fallback_code:
                chosen = fallback
        return chosen

    def geocode(self, address: str, region: Optional[str] = None) -> Optional[GeocodeResult]:
        primary = self._request(address, region)
        fallback = self._request(address, None) if region else None
        chosen = self._choose(address, region, primary, fallback) if region else primary
        if not chosen:
            logging.warning("No geocoding result for '%s'", address)
            return None

        geometry = chosen.get("geometry") or {}
        location = geometry.get("location") or {}
        if "lat" not in location or "lng" not in location:
            return None
        return GeocodeResult(
            input=address,
            formatted_address=chosen.get("formatted_address") or address,
            lat=float(location["lat"]),
            lng=float(location["lng"]),
            confidence=LOCATION_TYPE_CONFIDENCE.get(geometry.get("location_type"), 0.4),
            country_code=self._country(chosen),
        )


class NominatimGeocoder(Geocoder):
    name = "osm"

    def __init__(
        self,
        user_agent: Optional[str] = None,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        delay: Optional[float] = None,
        language: str = "en",
    ):
        self.user_agent = user_agent or Config.OSM_USER_AGENT
        self.url = url or Config.NOMINATIM_URL
        self.timeout = timeout or Config.GEOCODE_TIMEOUT_SEC
        self.delay = Config.OSM_DELAY_SEC if delay is None else delay
        self.language = language

    def geocode(self, address: str, region: Optional[str] = None) -> Optional[GeocodeResult]:
        params = {
            "q": address,
            "format": "jsonv2",
            "addressdetails": 1,
            "limit": 1,
            "accept-language": self.language,
        }
        if region:
            params["countrycodes"] = region.lower()

        response = requests.get(
            self.url,
            params=params,
            headers={"User-Agent": self.user_agent},
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        if not data:
            return None

        item = data[0]
        details = item.get("address", {}) if isinstance(item, dict) else {}
        lat = item.get("lat")
        lon = item.get("lon")
        if not lat or not lon:
            return None

        importance = item.get("importance")
        if isinstance(importance, (int, float)):
            confidence = min(1.0, float(importance))
        else:
            confidence = 0.7 if details.get("road") else 0.5
        if details.get("house_number"):
            confidence = max(confidence, 0.8)

        country_code = details.get("country_code")
        return GeocodeResult(
            input=address,
            formatted_address=item.get("display_name") or address,
            lat=float(lat),
            lng=float(lon),
            confidence=round(confidence, 3),
            country_code=country_code.upper() if country_code else None,
        )

    def geocode_batch(
        self, addresses: List[str], region: Optional[str] = None
    ) -> List[Optional[GeocodeResult]]:
        results: List[Optional[GeocodeResult]] = []
        for idx, address in enumerate(addresses):
            # Nominatim usage policy: at most one request per second
            if idx and self.delay:
                time.sleep(self.delay)
            try:
                results.append(self.geocode(address, region))
            except requests.RequestException as exc:
                logging.warning("OSM lookup failed for '%s': %s", address, exc)
                results.append(None)
        return results


def build_geocoder(kind: Optional[str] = None) -> Optional[Geocoder]:
    kind = (kind or Config.GEOCODER or "").lower()
    if kind == "google":
        return GoogleGeocoder()
    if kind == "osm":
        return NominatimGeocoder()
    if kind in {"", "none"}:
        return None
    raise ValueError(f"Unknown geocoder '{kind}'")


def main() -> None:
    parser = argparse.ArgumentParser(description="Geocode one or more addresses.")
    parser.add_argument("addresses", nargs="+", help="Addresses to resolve.")
    parser.add_argument("--region", help="ISO-2 country code to bias results.")
    parser.add_argument("--geocoder", choices=["google", "osm"], help="Backend to use.")
    args = parser.parse_args()

    Config.setup_logging()
    geocoder = build_geocoder(args.geocoder)
    results = geocoder.geocode_batch(args.addresses, args.region)
    output = [result.to_dict() if result else None for result in results]
    print(json.dumps(output, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()
