import argparse
import base64
import binascii
import json
import logging
from typing import Any, List, Optional

import httpx
from google import genai
from google.genai import errors, types

from agent_tools import TOOLS, execute_tool
from config import Config
from errors import (
    AIExtractionFailed,
    ProviderHttpError,
    RateLimitExceeded,
    SchemaViolation,
    no_input,
)
from extraction_schema import coerce_legacy_shape, schema_for, verify_extraction
from geocoding import Geocoder
from llm_json import extract_json
from prompts import (
    build_agent_instruction,
    build_direct_prompt,
    build_vision_prompt,
    sanitize_model_text,
)
from providers import ExtractionProvider
from rate_limiter import SlidingWindowRateLimiter


_CLIENT: Optional[genai.Client] = None

AGENT_RETRY_HINT = (
    "Your last answer was not a valid JSON object for the required schema. "
    "Reply with the JSON object only."
)


def _get_client() -> genai.Client:
    global _CLIENT
    if _CLIENT is None:
        if not Config.GEMINI_API_KEY:
            raise RuntimeError("GEMINI_API_KEY not set.")
        _CLIENT = genai.Client(api_key=Config.GEMINI_API_KEY)
    return _CLIENT


def _response_text(response: Any) -> str:
    text = getattr(response, "text", None)
    return text.strip() if isinstance(text, str) else ""


class GeminiProvider(ExtractionProvider):
    name = "gemini"

    def __init__(
        self,
        client: Optional[genai.Client] = None,
        model: Optional[str] = None,
        vision_model: Optional[str] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        caller_id: str = "server",
        geocoder: Optional[Geocoder] = None,
        max_attempts: Optional[int] = None,
    ):
        self._client = client
        self.model = model or Config.GEMINI_MODEL
        self.vision_model = vision_model or Config.GEMINI_VISION_MODEL
        self.rate_limiter = rate_limiter
        self.caller_id = caller_id
        self.geocoder = geocoder
        self.max_attempts = max_attempts or Config.AGENT_MAX_ATTEMPTS

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            self._client = _get_client()
        return self._client

    def _generate(self, model: str, contents: Any, config: types.GenerateContentConfig) -> Any:
        if self.rate_limiter is not None:
            self.rate_limiter.acquire(self.caller_id)
        try:
            return self.client.models.generate_content(
                model=model,
                contents=contents,
                config=config,
            )
        except errors.ClientError as exc:
            status = getattr(exc, "status", "") or ""
            code = getattr(exc, "code", None) or 400
            message = str(exc)
            if code == 429 or status == "RESOURCE_EXHAUSTED" or "quota" in message.lower():
                raise RateLimitExceeded(Config.RATE_LIMIT_WINDOW_SEC, "Gemini quota exhausted.") from exc
            raise ProviderHttpError("gemini", code, "Gemini rejected the request.", message) from exc
        except errors.APIError as exc:
            code = getattr(exc, "code", None) or 500
            raise ProviderHttpError("gemini", code, "Gemini request failed.", str(exc)) from exc
        except httpx.TimeoutException as exc:
            raise ProviderHttpError("gemini", 504, "Gemini request timed out.", str(exc)) from exc
        except httpx.TransportError as exc:
            raise ProviderHttpError("gemini", 502, "Could not reach Gemini.", str(exc)) from exc

    @staticmethod
    def _json_config(use_crew_first: bool, constrained: bool) -> types.GenerateContentConfig:
        if not constrained:
            return types.GenerateContentConfig(temperature=0)
        return types.GenerateContentConfig(
            temperature=0,
            responseMimeType="application/json",
            responseJsonSchema=schema_for(use_crew_first),
        )

    def _parse(self, raw: str, use_crew_first: bool) -> Any:
        data = extract_json(raw)
        if data is None:
            raise SchemaViolation(details=f"Unparseable response: {raw[:200]}")
        return verify_extraction(coerce_legacy_shape(data, use_crew_first), use_crew_first)

    def _generate_json(self, model: str, contents: Any, use_crew_first: bool) -> Any:
        response = self._generate(model, contents, self._json_config(use_crew_first, True))
        raw = _response_text(response)
        if not raw:
            logging.warning("Gemini returned an empty body, retrying once without schema")
            response = self._generate(model, contents, self._json_config(use_crew_first, False))
            raw = _response_text(response)
            if not raw:
                raise AIExtractionFailed("Gemini returned an empty response.")
        return self._parse(raw, use_crew_first)

    def direct(self, text: str, use_crew_first: bool = False) -> Any:
        prompt = build_direct_prompt(text, use_crew_first)
        return self._generate_json(self.model, prompt, use_crew_first)

    def agent(self, text: str, use_crew_first: bool = False) -> Any:
        contents: List[types.Content] = [
            types.Content(role="user", parts=[types.Part(text=sanitize_model_text(text))])
        ]
        config = types.GenerateContentConfig(
            temperature=0,
            systemInstruction=build_agent_instruction(use_crew_first),
            tools=TOOLS,
        )

        for attempt in range(1, self.max_attempts + 1):
            response = self._generate(self.model, contents, config)
            calls = getattr(response, "function_calls", None) or []
            if calls:
                parts = []
                for call in calls:
                    result = execute_tool(call.name, call.args, self.geocoder)
                    parts.append(types.Part.from_function_response(name=call.name, response=result))
                contents.append(response.candidates[0].content)
                contents.append(types.Content(role="user", parts=parts))
                logging.info("Agent attempt %s: answered %s tool call(s)", attempt, len(parts))
                continue

            raw = _response_text(response)
            if not raw:
                logging.warning("Agent attempt %s: empty answer", attempt)
                continue
            try:
                return self._parse(raw, use_crew_first)
            except SchemaViolation as exc:
                logging.warning("Agent attempt %s: %s", attempt, exc.details or exc.message)
                contents.append(types.Content(role="model", parts=[types.Part(text=raw)]))
                contents.append(types.Content(role="user", parts=[types.Part(text=AGENT_RETRY_HINT)]))

        logging.warning(
            "Agent loop exhausted after %s attempts, falling back to direct mode",
            self.max_attempts,
        )
        return self.direct(text, use_crew_first)

    def vision(self, context: str, image_b64: str, use_crew_first: bool = False) -> Any:
        if not image_b64:
            raise no_input("Vision mode requires an image.")
        try:
            image_bytes = base64.b64decode(image_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise no_input("Image must be base64 encoded.") from exc

        contents = [
            types.Content(
                role="user",
                parts=[
                    types.Part(text=build_vision_prompt(context, use_crew_first)),
                    types.Part(inline_data=types.Blob(mime_type="image/jpeg", data=image_bytes)),
                ],
            )
        ]
        return self._generate_json(self.vision_model, contents, use_crew_first)


def main():
    parser = argparse.ArgumentParser(description="Run one Gemini extraction on a text file.")
    parser.add_argument("path", help="Path to a UTF-8 text file.")
    parser.add_argument("--mode", choices=["direct", "agent"], default="direct")
    parser.add_argument("--crew-first", action="store_true", help="Use the crew-first schema.")
    args = parser.parse_args()

    Config.setup_logging()
    with open(args.path, "r", encoding="utf-8") as f:
        text = f.read()
    provider = GeminiProvider()
    data = provider.parse(args.mode, text, args.crew_first)
    print(json.dumps(data, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()
