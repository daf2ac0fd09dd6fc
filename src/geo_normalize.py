import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from geocoding import Geocoder, country_hint_from_string, get_country_code


@dataclass
class GeoBias:
    city: Optional[str] = None
    country: Optional[str] = None

    @property
    def region(self) -> Optional[str]:
        return get_country_code(self.country)


def append_bias_if_incomplete(address: str, bias: Optional[GeoBias]) -> str:
    """Complete an address with the caller's city and country.

    "Rustenschacherallee 9" with bias Wien/Austria becomes
    "Rustenschacherallee 9, Wien, Austria". Addresses that already point at
    another country are returned as they are.
    """
    raw = (address or "").strip()
    if not raw or bias is None:
        return raw
    city = (bias.city or "").strip()
    country = (bias.country or "").strip()

    bias_code = get_country_code(country) if country else None
    if country and not bias_code:
        bias_code = country.upper()
    hint = country_hint_from_string(raw)
    if hint and bias_code and hint != bias_code:
        return raw

    if not city or not country:
        return raw
    lowered = raw.lower()
    has_comma = "," in raw
    has_city = city.lower() in lowered
    has_country = country.lower() in lowered
    if not has_comma or not has_city or not has_country:
        return f"{raw}, {city}, {country}"
    return raw


def normalize_extracted_addresses(
    locations: Iterable[str],
    bias: Optional[GeoBias] = None,
    geocoder: Optional[Geocoder] = None,
) -> List[str]:
    """Bias-complete every address, then swap in the geocoder's formatted address.

    Geocoding is best effort: when the backend fails the bias-prepared
    strings are returned and the extraction carries on.
    """
    cleaned = [loc.strip() for loc in locations or [] if loc and loc.strip()]
    if not cleaned:
        return []
    prepared = [append_bias_if_incomplete(loc, bias) for loc in cleaned]
    if geocoder is None:
        return prepared

    region = bias.region if bias else None
    try:
        results = geocoder.geocode_batch(prepared, region)
    except Exception as exc:
        logging.warning("Address normalization failed, using bias-prepared addresses: %s", exc)
        return prepared

    normalized = []
    for idx, address in enumerate(prepared):
        result = results[idx] if idx < len(results) else None
        formatted = (result.formatted_address or "").strip() if result else ""
        normalized.append(formatted or address)
    return normalized
