import logging
from typing import Any, Callable, Dict, List, Optional

import requests

from config import Config
from errors import ProviderEmptyResponse, ProviderHttpError, RateLimitExceeded, SchemaViolation
from extraction_schema import coerce_legacy_shape, verify_extraction
from llm_json import extract_json
from prompts import build_direct_prompt
from providers import ExtractionProvider
from rate_limiter import SlidingWindowRateLimiter


SYSTEM_MESSAGE = "You output ONLY valid JSON. No explanations."


class _UpstreamUnavailable(Exception):
    """5xx or transport failure; the caller may fall back to Gemini."""


def _message_content(payload: Dict[str, Any]) -> Any:
    choices = payload.get("choices") or []
    if not choices:
        return None
    message = choices[0].get("message") or {}
    return message.get("content")


def parse_content(content: Any) -> Optional[Any]:
    """Parse an OpenRouter message body into JSON data.

    Models answer with a plain string, a list of content parts, or (for some
    routes) an already decoded object.
    """
    if isinstance(content, dict):
        return content
    if isinstance(content, list):
        texts: List[str] = []
        for part in content:
            if isinstance(part, str):
                texts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                texts.append(part["text"])
        content = "".join(texts)
    if isinstance(content, str):
        return extract_json(content)
    return None


def _retry_after(response: requests.Response) -> int:
    value = response.headers.get("Retry-After")
    try:
        return max(1, int(float(value)))
    except (TypeError, ValueError):
        return Config.RATE_LIMIT_WINDOW_SEC


class OpenRouterProvider(ExtractionProvider):
    name = "openrouter"

    def __init__(
        self,
        api_key: Optional[str],
        model: Optional[str],
        gemini_fallback: Optional[ExtractionProvider] = None,
        crew_agent: Optional[Callable[[str], Any]] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        caller_id: str = "server",
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = (api_key or "").strip()
        self.model = (model or "").strip()
        self.gemini_fallback = gemini_fallback
        self.crew_agent = crew_agent
        self.rate_limiter = rate_limiter
        self.caller_id = caller_id
        self.timeout = timeout or Config.REQUEST_TIMEOUT_SEC
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if Config.OPENROUTER_REFERER:
            headers["HTTP-Referer"] = Config.OPENROUTER_REFERER
        if Config.OPENROUTER_TITLE:
            headers["X-Title"] = Config.OPENROUTER_TITLE
        return headers

    def _chat(self, prompt: str) -> Any:
        if not self.api_key or not self.model:
            raise ProviderHttpError(
                "openrouter", 401, "OpenRouter API key and model are required."
            )
        if self.rate_limiter is not None:
            self.rate_limiter.acquire(self.caller_id)

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_MESSAGE},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0,
            "response_format": {"type": "json_object"},
        }
        try:
            response = self.session.post(
                Config.OPENROUTER_URL,
                headers=self._headers(),
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise _UpstreamUnavailable(str(exc)) from exc

        if response.status_code >= 500:
            raise _UpstreamUnavailable(f"OpenRouter error {response.status_code}: {response.text[:300]}")
        if response.status_code == 429:
            raise RateLimitExceeded(_retry_after(response), "OpenRouter rate limit exceeded.")
        if response.status_code >= 400:
            raise ProviderHttpError(
                "openrouter",
                response.status_code,
                "OpenRouter request failed.",
                response.text[:300],
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise _UpstreamUnavailable(f"OpenRouter returned a non-JSON body: {response.text[:300]}") from exc
        if isinstance(data, dict) and data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise _UpstreamUnavailable(message or "OpenRouter error.")
        content = _message_content(data)
        if content is None or (isinstance(content, str) and not content.strip()):
            raise ProviderEmptyResponse("Empty response from OpenRouter.")
        return content

    def _structured(self, text: str, use_crew_first: bool) -> Any:
        prompt = build_direct_prompt(text, use_crew_first)
        try:
            content = self._chat(prompt)
            parsed = parse_content(content)
            if parsed is None:
                raise SchemaViolation(details="OpenRouter returned no parseable JSON.")
            return verify_extraction(coerce_legacy_shape(parsed, use_crew_first), use_crew_first)
        except (_UpstreamUnavailable, ProviderEmptyResponse, SchemaViolation) as exc:
            if self.gemini_fallback is None:
                if isinstance(exc, (ProviderEmptyResponse, SchemaViolation)):
                    raise
                raise ProviderHttpError("openrouter", 502, "OpenRouter request failed.", str(exc)) from exc
            logging.warning("OpenRouter failed (%s), falling back to Gemini once", exc)
            return self.gemini_fallback.direct(text, use_crew_first)

    def direct(self, text: str, use_crew_first: bool = False) -> Any:
        return self._structured(text, use_crew_first)

    def agent(self, text: str, use_crew_first: bool = False) -> Any:
        if not use_crew_first:
            return self._structured(text, use_crew_first)
        if self.crew_agent is None:
            logging.info("No crew-first agent configured for OpenRouter, using structured call")
            return self._structured(text, use_crew_first)
        result = self.crew_agent(text)
        return verify_extraction(result, use_crew_first)
