"""Output schemas for callsheet extraction and the runtime guards that enforce them.

Two shapes exist and callers pick one with ``use_crew_first``:

* the simple ``CallsheetExtraction`` record (date, project, companies, locations)
* the richer ``CrewFirstCallsheet`` that classifies every location by crew
  logistics category

The JSON schema dicts are sent to the model as response constraints; the
``is_*`` guards re-check whatever comes back because neither provider
guarantees schema adherence.
"""
from typing import Any, List, Optional

from typing_extensions import NotRequired, TypedDict

from errors import SchemaViolation


CREW_FIRST_VERSION = "parser-crew-1"

LOCATION_TYPES = (
    "FILMING_PRINCIPAL",
    "UNIT_BASE",
    "CATERING",
    "MAKEUP_HAIR",
    "WARDROBE",
    "CREW_PARKING",
    "LOAD_UNLOAD",
)


class CallsheetExtraction(TypedDict):
    date: str
    projectName: str
    productionCompanies: List[str]
    locations: List[str]


class CrewFirstLocation(TypedDict):
    location_type: str
    address: str
    name: NotRequired[str]
    formatted_address: NotRequired[Optional[str]]
    latitude: NotRequired[Optional[float]]
    longitude: NotRequired[Optional[float]]
    notes: NotRequired[List[str]]
    confidence: NotRequired[float]


class CrewFirstCallsheet(TypedDict):
    version: str
    date: str
    projectName: str
    locations: List[CrewFirstLocation]
    rutas: List[Any]
    productionCompany: NotRequired[Optional[str]]
    motiv: NotRequired[Optional[str]]
    episode: NotRequired[Optional[str]]
    shootingDay: NotRequired[Optional[str]]
    generalCallTime: NotRequired[Optional[str]]


CALLSHEET_SCHEMA = {
    "type": "object",
    "properties": {
        "date": {
            "type": "string",
            "description": "Normalized shooting day date YYYY-MM-DD",
        },
        "projectName": {
            "type": "string",
            "description": "Main project/production name",
        },
        "productionCompanies": {
            "type": "array",
            "description": "Production companies responsible for the shoot",
            "items": {"type": "string"},
        },
        "locations": {
            "type": "array",
            "description": "Ordered list of principal filming locations (addresses or place names)",
            "items": {"type": "string"},
        },
    },
    "required": ["date", "projectName", "productionCompanies", "locations"],
    "additionalProperties": False,
}

_OPTIONAL_STRING = {"type": ["string", "null"]}

CREW_FIRST_SCHEMA = {
    "type": "object",
    "properties": {
        "version": {"type": "string", "enum": [CREW_FIRST_VERSION]},
        "date": {
            "type": "string",
            "description": "Normalized shooting day date YYYY-MM-DD",
        },
        "projectName": {"type": "string"},
        "productionCompany": dict(_OPTIONAL_STRING),
        "motiv": dict(_OPTIONAL_STRING),
        "episode": dict(_OPTIONAL_STRING),
        "shootingDay": dict(_OPTIONAL_STRING),
        "generalCallTime": {
            "type": ["string", "null"],
            "description": "General call time HH:MM",
        },
        "locations": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "location_type": {"type": "string", "enum": list(LOCATION_TYPES)},
                    "name": {"type": "string"},
                    "address": {
                        "type": "string",
                        "description": "Address exactly as written in the document",
                    },
                    "formatted_address": dict(_OPTIONAL_STRING),
                    "latitude": {"type": ["number", "null"]},
                    "longitude": {"type": ["number", "null"]},
                    "notes": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "At most 2 short logistics notes",
                    },
                    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                },
                "required": ["location_type", "address"],
                "additionalProperties": False,
            },
        },
        "rutas": {"type": "array", "items": {}},
    },
    "required": ["version", "date", "projectName", "locations", "rutas"],
    "additionalProperties": False,
}


def schema_for(use_crew_first: bool) -> dict:
    return CREW_FIRST_SCHEMA if use_crew_first else CALLSHEET_SCHEMA


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


def _optional(value: Any, check) -> bool:
    return value is None or check(value)


def is_callsheet_extraction(data: Any) -> bool:
    return (
        isinstance(data, dict)
        and isinstance(data.get("date"), str)
        and isinstance(data.get("projectName"), str)
        and _is_string_list(data.get("productionCompanies"))
        and _is_string_list(data.get("locations"))
    )


def is_crew_first_location(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    if data.get("location_type") not in LOCATION_TYPES:
        return False
    if not isinstance(data.get("address"), str):
        return False
    if "name" in data and not isinstance(data["name"], str):
        return False
    if not _optional(data.get("formatted_address"), lambda v: isinstance(v, str)):
        return False
    if not _optional(data.get("latitude"), _is_number):
        return False
    if not _optional(data.get("longitude"), _is_number):
        return False
    if "notes" in data and not _is_string_list(data["notes"]):
        return False
    if "confidence" in data and not _is_number(data["confidence"]):
        return False
    return True


def is_crew_first_callsheet(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    if data.get("version") != CREW_FIRST_VERSION:
        return False
    if not isinstance(data.get("date"), str) or not isinstance(data.get("projectName"), str):
        return False
    for key in ("productionCompany", "motiv", "episode", "shootingDay", "generalCallTime"):
        if not _optional(data.get(key), lambda v: isinstance(v, str)):
            return False
    locations = data.get("locations")
    if not isinstance(locations, list):
        return False
    if not all(is_crew_first_location(item) for item in locations):
        return False
    return isinstance(data.get("rutas"), list)


def coerce_legacy_shape(data: Any, use_crew_first: bool) -> Any:
    """Lift older single-company payloads into the current simple shape.

    ``productionCompany: "X"`` becomes ``productionCompanies: ["X"]`` and a
    missing company list becomes ``[]``. Crew-first payloads are left alone.
    """
    if use_crew_first or not isinstance(data, dict):
        return data
    if isinstance(data.get("productionCompanies"), list):
        return data
    coerced = dict(data)
    legacy = coerced.pop("productionCompany", None)
    if isinstance(legacy, str) and legacy.strip():
        coerced["productionCompanies"] = [legacy.strip()]
    else:
        coerced["productionCompanies"] = []
    return coerced


def verify_extraction(data: Any, use_crew_first: bool) -> Any:
    """Return ``data`` unchanged when it matches the selected schema.

    Raises SchemaViolation otherwise; there is no partial acceptance.
    """
    if use_crew_first:
        if is_crew_first_callsheet(data):
            return data
        raise SchemaViolation(details="Response does not match the crew-first schema.")
    if is_callsheet_extraction(data):
        return data
    raise SchemaViolation(details="Response does not match the callsheet schema.")
