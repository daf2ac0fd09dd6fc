import logging
import re
from typing import Any, Dict, Optional

from google.genai import types

from errors import ExtractorError
from geocoding import Geocoder


GEOCODE_ADDRESS = types.FunctionDeclaration(
    name="geocode_address",
    description="Resolve a postal address to coordinates and a formatted address.",
    parameters=types.Schema(
        type=types.Type.OBJECT,
        properties={
            "address": types.Schema(
                type=types.Type.STRING,
                description="Full address as written in the document.",
            ),
        },
        required=["address"],
    ),
)

ADDRESS_NORMALIZE = types.FunctionDeclaration(
    name="address_normalize",
    description="Clean up whitespace and punctuation of a raw address string.",
    parameters=types.Schema(
        type=types.Type.OBJECT,
        properties={
            "raw": types.Schema(type=types.Type.STRING, description="Raw address text."),
        },
        required=["raw"],
    ),
)

TOOLS = [types.Tool(function_declarations=[GEOCODE_ADDRESS, ADDRESS_NORMALIZE])]
TOOL_NAMES = {"geocode_address", "address_normalize"}


def address_normalize(raw: str) -> Dict[str, str]:
    normalized = re.sub(r"\s+", " ", raw or "").strip()
    normalized = re.sub(r"\s+,", ",", normalized)
    return {"normalized": normalized}


def geocode_address(address: str, geocoder: Optional[Geocoder]) -> Dict[str, Any]:
    address = (address or "").strip()
    if not address:
        return {"error": "address is required"}
    if geocoder is None:
        return {"error": "geocoding is not configured"}
    result = geocoder.geocode(address)
    if result is None:
        return {"error": f"no result for '{address}'"}
    return {
        "lat": result.lat,
        "lng": result.lng,
        "confidence": result.confidence,
        "address": result.formatted_address,
    }


def execute_tool(name: str, args: Optional[Dict[str, Any]], geocoder: Optional[Geocoder]) -> Dict[str, Any]:
    """Run a tool call from the model on the server.

    Unknown tools and tool failures come back as an ``{"error": ...}``
    payload so the model can carry on without them.
    """
    args = args or {}
    try:
        if name == "address_normalize":
            return address_normalize(args.get("raw") or args.get("address") or "")
        if name == "geocode_address":
            return geocode_address(args.get("address") or args.get("raw") or "", geocoder)
    except ExtractorError as exc:
        logging.warning("Tool %s failed: %s", name, exc.message)
        return {"error": exc.message}
    except Exception as exc:
        logging.warning("Tool %s failed: %s", name, exc)
        return {"error": str(exc)}
    logging.warning("Model requested unknown tool '%s'", name)
    return {"error": f"unknown tool '{name}'"}
