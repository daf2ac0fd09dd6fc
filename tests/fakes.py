import io
import json
from types import SimpleNamespace
from typing import Any, List, Optional

import requests
from google.genai import types
from PIL import Image

from errors import GeocodingFailure
from geocoding import GeocodeResult, Geocoder
from providers import ExtractionProvider


VALID_EXTRACTION = {
    "date": "2024-05-06",
    "projectName": "Alpenkrimi",
    "productionCompanies": ["Mega-Film GmbH"],
    "locations": ["Salmgasse 10, 1030 Wien"],
}


def text_response(text: Optional[str]) -> SimpleNamespace:
    return SimpleNamespace(text=text, function_calls=None, candidates=[])


def json_response(data: Any) -> SimpleNamespace:
    return text_response(json.dumps(data))


def tool_call_response(name: str, args: dict) -> SimpleNamespace:
    call = types.FunctionCall(name=name, args=args)
    content = types.Content(role="model", parts=[types.Part(function_call=call)])
    return SimpleNamespace(
        text=None,
        function_calls=[SimpleNamespace(name=name, args=args)],
        candidates=[SimpleNamespace(content=content)],
    )


class FakeModels:
    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.calls: List[SimpleNamespace] = []

    def generate_content(self, model, contents, config):
        self.calls.append(SimpleNamespace(model=model, contents=contents, config=config))
        if not self.responses:
            raise AssertionError("unexpected generate_content call")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeClient:
    def __init__(self, responses: List[Any]):
        self.models = FakeModels(responses)


class FakeGeocoder(Geocoder):
    name = "fake"

    def __init__(self, formatted: Optional[dict] = None, fail: bool = False):
        self.formatted = formatted or {}
        self.fail = fail
        self.batches: List[tuple] = []
        self.lookups: List[str] = []

    def geocode(self, address, region=None):
        self.lookups.append(address)
        if address not in self.formatted:
            return None
        return GeocodeResult(
            input=address,
            formatted_address=self.formatted[address],
            lat=48.2,
            lng=16.4,
            confidence=1.0,
        )

    def geocode_batch(self, addresses, region=None):
        self.batches.append((list(addresses), region))
        if self.fail:
            raise GeocodingFailure("backend down")
        return [self.geocode(address, region) for address in addresses]


class StubProvider(ExtractionProvider):
    """Records prompts and answers with a fixed payload (or raises it)."""

    name = "stub"

    def __init__(self, result: Any = None, vision_result: Any = None):
        self.result = VALID_EXTRACTION if result is None else result
        self.vision_result = vision_result
        self.direct_calls: List[tuple] = []
        self.agent_calls: List[tuple] = []
        self.vision_calls: List[tuple] = []

    def _answer(self, value: Any, text: str) -> Any:
        if callable(value):
            value = value(text)
        if isinstance(value, Exception):
            raise value
        return value

    def direct(self, text, use_crew_first=False):
        self.direct_calls.append((text, use_crew_first))
        return self._answer(self.result, text)

    def agent(self, text, use_crew_first=False):
        self.agent_calls.append((text, use_crew_first))
        return self._answer(self.result, text)

    def vision(self, context, image_b64, use_crew_first=False):
        self.vision_calls.append((context, image_b64, use_crew_first))
        return self._answer(self.vision_result or self.result, context)


class FakeHttpResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = "", headers: Optional[dict] = None):
        self.status_code = status_code
        self._payload = payload
        self.text = text or (json.dumps(payload) if payload is not None else "")
        self.headers = headers or {}

    def json(self):
        return json.loads(self.text)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.posts: List[dict] = []
        self.gets: List[dict] = []

    def _next(self):
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def post(self, url, headers=None, json=None, timeout=None):
        self.posts.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        return self._next()

    def get(self, url, params=None, timeout=None, headers=None):
        self.gets.append({"url": url, "params": params, "timeout": timeout})
        return self._next()


def image_bytes(size=(64, 48), fmt="PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color=(200, 30, 30)).save(buffer, format=fmt)
    return buffer.getvalue()
