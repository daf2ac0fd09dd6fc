#!/usr/bin/env python3
import argparse
import logging
from typing import Any, Callable, Dict, Optional

import requests
from flask import Flask, jsonify, request
from google import genai
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename

from config import Config
from errors import ExtractorError, InputError, RateLimitExceeded
from extractor import CallsheetExtractor, ProviderCredentials
from gemini_provider import GeminiProvider
from geo_normalize import GeoBias
from geocoding import Geocoder, build_geocoder
from input_normalizer import ExtractionInput, UploadedFile
from post_process import normalize_crew_first
from rate_limiter import SlidingWindowRateLimiter


MAX_UPLOAD_BYTES = 20 * 1024 * 1024


def _error(status: int, message: str, details: Optional[str] = None):
    payload: Dict[str, Any] = {"error": message}
    if details:
        payload["details"] = details
    return jsonify(payload), status


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def _text_field(body: Dict[str, Any], key: str) -> str:
    value = body.get(key)
    return value.strip() if isinstance(value, str) else ""


def _caller_id() -> str:
    return request.headers.get("X-User-Id") or request.remote_addr or "anonymous"


def _json_body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InputError("invalid_request", "Invalid JSON body")
    return body


def _clamp(result: Any, use_crew_first: bool) -> Any:
    return normalize_crew_first(result) if use_crew_first else result


def create_app(
    limiter: Optional[SlidingWindowRateLimiter] = None,
    client: Optional[genai.Client] = None,
    geocoder: Optional[Geocoder] = None,
    extractor: Optional[CallsheetExtractor] = None,
    crew_agent: Optional[Callable[[str], Any]] = None,
) -> Flask:
    """Build the HTTP app around one process-wide rate limiter."""
    limiter = limiter or SlidingWindowRateLimiter()
    if geocoder is None:
        geocoder = build_geocoder()
    if extractor is None:
        extractor = CallsheetExtractor(
            client=client, geocoder=geocoder, rate_limiter=limiter, crew_agent=crew_agent
        )

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_BYTES

    def _gemini() -> GeminiProvider:
        return GeminiProvider(
            client=client, rate_limiter=limiter, caller_id=_caller_id(), geocoder=geocoder
        )

    @app.errorhandler(ExtractorError)
    def handle_extractor_error(exc: ExtractorError):
        logging.warning("%s %s failed: [%s] %s", request.method, request.path, exc.code, exc.message)
        response, status = jsonify(exc.to_payload()), exc.status
        if isinstance(exc, RateLimitExceeded):
            response.headers["Retry-After"] = str(exc.retry_after)
        return response, status

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        if exc.code == 405:
            return _error(405, "Method Not Allowed")
        return _error(exc.code or 500, exc.name, exc.description)

    @app.errorhandler(requests.Timeout)
    def handle_timeout(exc: requests.Timeout):
        logging.warning("Upstream timeout on %s: %s", request.path, exc)
        return _error(504, "Upstream request timed out", str(exc))

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        logging.exception("Unhandled error on %s", request.path)
        return _error(500, "Internal server error", str(exc))

    @app.post("/api/ai/gemini")
    def gemini_parse():
        body = _json_body()
        mode = _text_field(body, "mode") or "direct"
        if mode not in {"direct", "agent"}:
            return _error(400, "mode must be 'direct' or 'agent'")
        text = _text_field(body, "text")
        if not text:
            return _error(400, "Request body must include a non-empty text field")
        use_crew_first = _as_bool(body.get("useCrewFirst"))
        result = _gemini().parse(mode, text, use_crew_first)
        return jsonify(_clamp(result, use_crew_first))

    @app.post("/api/ai/gemini/vision")
    def gemini_vision():
        body = _json_body()
        mode = _text_field(body, "mode") or "vision"
        if mode != "vision":
            return _error(400, "mode must be 'vision'")
        image = _text_field(body, "image")
        if not image:
            return _error(400, "Request body must include a base64 image")
        use_crew_first = _as_bool(body.get("useCrewFirst"))
        result = _gemini().vision(_text_field(body, "text"), image, use_crew_first)
        return jsonify(_clamp(result, use_crew_first))

    @app.post("/api/google/maps/geocode")
    def geocode():
        body = _json_body()
        locations = body.get("locations")
        if (
            not isinstance(locations, list)
            or not locations
            or not all(isinstance(loc, str) and loc.strip() for loc in locations)
        ):
            return _error(400, "locations must be a non-empty array of strings")
        if geocoder is None:
            return _error(500, "Geocoding is not configured on the server")

        region = _text_field(body, "region") or None
        results = geocoder.geocode_batch([loc.strip() for loc in locations], region)
        payload = []
        for result in results:
            if result is None:
                payload.append(None)
                continue
            payload.append(
                {
                    "input": result.input,
                    "formatted_address": result.formatted_address,
                    "lat": result.lat,
                    "lng": result.lng,
                }
            )
        return jsonify({"results": payload})

    @app.post("/api/extract")
    def extract():
        if request.files or request.form:
            fields: Dict[str, Any] = request.form.to_dict()
        else:
            fields = request.get_json(silent=True) or {}

        upload = request.files.get("file")
        file = None
        if upload is not None and upload.filename:
            file = UploadedFile(
                name=secure_filename(upload.filename) or "upload",
                content=upload.read(),
                mime_type=upload.mimetype or "",
            )

        bias = None
        if _text_field(fields, "biasCity") or _text_field(fields, "biasCountry"):
            bias = GeoBias(
                city=_text_field(fields, "biasCity") or None,
                country=_text_field(fields, "biasCountry") or None,
            )
        credentials = ProviderCredentials(
            openrouter_api_key=_text_field(fields, "openRouterApiKey") or None,
            openrouter_model=_text_field(fields, "openRouterModel") or None,
        )
        result = extractor.extract(
            _text_field(fields, "mode") or "direct",
            ExtractionInput(text=fields.get("text") if isinstance(fields.get("text"), str) else None, file=file),
            provider=_text_field(fields, "provider") or "auto",
            credentials=credentials,
            use_crew_first=_as_bool(fields.get("useCrewFirst")),
            content_type=_text_field(fields, "contentType") or "callsheet",
            geocode_bias=bias,
            caller_id=_caller_id(),
        )
        return jsonify(result)

    return app


def main():
    parser = argparse.ArgumentParser(description="Serve the callsheet extraction API.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=5000)
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()

    Config.setup_logging()
    Config.validate()
    app = create_app()
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
