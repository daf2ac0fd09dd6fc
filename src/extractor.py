import argparse
import json
import logging
import mimetypes
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

from google import genai
from tqdm import tqdm

from config import Config
from errors import ExtractorError, InputError, RateLimitExceeded
from extraction_schema import CallsheetExtraction, verify_extraction
from gemini_provider import GeminiProvider
from geo_normalize import GeoBias, normalize_extracted_addresses
from geocoding import Geocoder, build_geocoder
from input_normalizer import ExtractionInput, UploadedFile, normalize
from openrouter_provider import OpenRouterProvider
from post_process import crew_first_to_extraction, normalize_crew_first, post_process_extraction
from prompts import build_vision_context, frame_for_content_type
from providers import ExtractionProvider
from rate_limiter import SlidingWindowRateLimiter


MODES = ("direct", "agent", "vision")
PROVIDERS = ("auto", "gemini", "openrouter")
CONTENT_TYPES = ("callsheet", "email")


@dataclass
class ProviderCredentials:
    openrouter_api_key: Optional[str] = None
    openrouter_model: Optional[str] = None

    @property
    def has_openrouter(self) -> bool:
        return bool((self.openrouter_api_key or "").strip() and (self.openrouter_model or "").strip())


def resolve_provider(
    preference: str,
    credentials: Optional[ProviderCredentials],
    gemini: ExtractionProvider,
    crew_agent: Optional[Callable[[str], Any]] = None,
    rate_limiter: Optional[SlidingWindowRateLimiter] = None,
    caller_id: str = "server",
) -> ExtractionProvider:
    """Pick the backend for a request.

    An explicit choice always wins. ``auto`` only uses OpenRouter when the
    caller brought both a key and a model; otherwise the server-funded
    Gemini provider is used.
    """
    credentials = credentials or ProviderCredentials()
    preference = (preference or "auto").lower()
    if preference not in PROVIDERS:
        raise InputError("invalid_request", f"Unknown provider '{preference}'.")
    if preference == "gemini":
        return gemini
    if preference == "openrouter" or credentials.has_openrouter:
        return OpenRouterProvider(
            credentials.openrouter_api_key,
            credentials.openrouter_model,
            gemini_fallback=gemini,
            crew_agent=crew_agent,
            rate_limiter=rate_limiter,
            caller_id=caller_id,
        )
    logging.info("Auto-selecting Gemini (no OpenRouter credentials)")
    return gemini


class TextDraft:
    """First vision stage: a plain text extraction used as a hint."""

    def __init__(self, provider: ExtractionProvider):
        self.provider = provider

    def run(self, text: str, use_crew_first: bool) -> Optional[Any]:
        if not text.strip():
            return None
        try:
            return self.provider.direct(text, use_crew_first)
        except RateLimitExceeded:
            raise
        except ExtractorError as exc:
            logging.warning("Text draft failed, continuing with image and raw text: %s", exc.message)
            return None


class VisionRefine:
    """Second vision stage: Gemini looks at the image with the draft as context."""

    def __init__(self, gemini: GeminiProvider):
        self.gemini = gemini

    def run(self, text: str, image: Optional[str], draft: Optional[Any], use_crew_first: bool) -> Any:
        context = build_vision_context(text, draft)
        return self.gemini.vision(context, image or "", use_crew_first)


@dataclass
class ExtractionJob:
    label: str
    extraction_input: ExtractionInput
    mode: str = "direct"
    provider: str = "auto"
    credentials: Optional[ProviderCredentials] = None
    use_crew_first: bool = False
    content_type: str = "callsheet"
    geocode_bias: Optional[GeoBias] = None


@dataclass
class BatchResult:
    results: List[Tuple[str, CallsheetExtraction]] = field(default_factory=list)
    errors: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.errors)


class CallsheetExtractor:
    def __init__(
        self,
        client: Optional[genai.Client] = None,
        geocoder: Optional[Geocoder] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        crew_agent: Optional[Callable[[str], Any]] = None,
        gemini: Optional[GeminiProvider] = None,
    ):
        self.client = client
        self.geocoder = geocoder
        self.rate_limiter = rate_limiter
        self.crew_agent = crew_agent
        self.gemini = gemini

    def _gemini(self, caller_id: str) -> GeminiProvider:
        if self.gemini is not None:
            return self.gemini
        return GeminiProvider(
            client=self.client,
            rate_limiter=self.rate_limiter,
            caller_id=caller_id,
            geocoder=self.geocoder,
        )

    def extract(
        self,
        mode: str,
        extraction_input: ExtractionInput,
        provider: str = "auto",
        credentials: Optional[ProviderCredentials] = None,
        use_crew_first: bool = False,
        content_type: str = "callsheet",
        geocode_bias: Optional[GeoBias] = None,
        caller_id: str = "server",
    ) -> CallsheetExtraction:
        if mode not in MODES:
            raise InputError("invalid_request", f"Unknown mode '{mode}'.")
        if content_type not in CONTENT_TYPES:
            raise InputError("invalid_request", f"Unknown content type '{content_type}'.")

        file_name = extraction_input.file.name if extraction_input.file else ""
        logging.info(
            "Extraction started: mode=%s provider=%s crew_first=%s file=%s",
            mode,
            provider,
            use_crew_first,
            file_name or "N/A",
        )
        normalized = normalize(mode, extraction_input)
        logging.info(
            "Normalized %s input: %s chars, image=%s",
            normalized.source_kind,
            len(normalized.text),
            bool(normalized.image),
        )

        gemini = self._gemini(caller_id)
        chosen = resolve_provider(
            provider, credentials, gemini, self.crew_agent, self.rate_limiter, caller_id
        )
        logging.info("Using provider: %s", chosen.name)
        text_for_model = frame_for_content_type(normalized.text, content_type)

        if mode == "vision":
            draft = None
            if normalized.text.strip():
                draft = TextDraft(chosen).run(text_for_model, use_crew_first)
            parsed = VisionRefine(gemini).run(text_for_model, normalized.image, draft, use_crew_first)
        else:
            parsed = chosen.parse(mode, text_for_model, use_crew_first)

        verify_extraction(parsed, use_crew_first)
        if use_crew_first:
            parsed = crew_first_to_extraction(normalize_crew_first(parsed))

        processed = post_process_extraction(parsed, normalized.text, file_name)
        processed["locations"] = normalize_extracted_addresses(
            processed["locations"], geocode_bias, self.geocoder
        )
        return verify_extraction(processed, False)

    def run_job(self, job: ExtractionJob, caller_id: str = "server") -> CallsheetExtraction:
        return self.extract(
            job.mode,
            job.extraction_input,
            provider=job.provider,
            credentials=job.credentials,
            use_crew_first=job.use_crew_first,
            content_type=job.content_type,
            geocode_bias=job.geocode_bias,
            caller_id=caller_id,
        )

    def extract_batch(self, jobs: List[ExtractionJob], max_workers: int = 4) -> BatchResult:
        """Run several documents concurrently; one failure never stops the others."""
        outcomes = {}
        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
            futures = {executor.submit(self.run_job, job): idx for idx, job in enumerate(jobs)}
            for future in tqdm(as_completed(futures), total=len(futures), desc="Extracting"):
                idx = futures[future]
                try:
                    outcomes[idx] = (True, future.result())
                except ExtractorError as exc:
                    logging.warning("Extraction failed for %s: %s", jobs[idx].label, exc.message)
                    outcomes[idx] = (False, exc.message)
                except Exception as exc:
                    logging.exception("Unexpected error for %s", jobs[idx].label)
                    outcomes[idx] = (False, str(exc))

        batch = BatchResult()
        for idx, job in enumerate(jobs):
            ok, value = outcomes[idx]
            if ok:
                batch.results.append((job.label, value))
            else:
                batch.errors.append((job.label, value))
        logging.info("Batch done: %s succeeded, %s failed", batch.succeeded, batch.failed)
        return batch


def load_upload(path: Path) -> UploadedFile:
    mime_type, _ = mimetypes.guess_type(str(path))
    return UploadedFile(name=path.name, content=path.read_bytes(), mime_type=mime_type or "")


def main():
    parser = argparse.ArgumentParser(
        description="Extract date, project, companies and filming locations from callsheets."
    )
    parser.add_argument("files", nargs="*", help="Callsheet files (PDF, image, CSV or text).")
    parser.add_argument("--text", help="Pasted text to extract from instead of a file.")
    parser.add_argument("--mode", choices=MODES, default="direct")
    parser.add_argument("--provider", choices=PROVIDERS, default="auto")
    parser.add_argument("--crew-first", action="store_true", help="Use the crew-first schema.")
    parser.add_argument("--content-type", choices=CONTENT_TYPES, default="callsheet")
    parser.add_argument("--bias-city", help="City appended to incomplete addresses.")
    parser.add_argument("--bias-country", help="Country appended to incomplete addresses.")
    parser.add_argument(
        "--openrouter-model",
        default=os.getenv("OPENROUTER_MODEL"),
        help="OpenRouter model id (key is read from OPENROUTER_API_KEY).",
    )
    parser.add_argument("--parallel", type=int, default=2, help="Documents processed at once.")
    parser.add_argument("--output", help="Optional path to save JSON output.")
    args = parser.parse_args()

    Config.setup_logging()
    Config.validate()

    credentials = ProviderCredentials(
        openrouter_api_key=os.getenv("OPENROUTER_API_KEY"),
        openrouter_model=args.openrouter_model,
    )
    bias = None
    if args.bias_city or args.bias_country:
        bias = GeoBias(city=args.bias_city, country=args.bias_country)

    jobs: List[ExtractionJob] = []
    if args.text:
        jobs.append(ExtractionJob("text", ExtractionInput(text=args.text)))
    for path in args.files:
        jobs.append(ExtractionJob(path, ExtractionInput(file=load_upload(Path(path)))))
    if not jobs:
        parser.error("Provide --text or at least one file.")
    for job in jobs:
        job.mode = args.mode
        job.provider = args.provider
        job.credentials = credentials
        job.use_crew_first = args.crew_first
        job.content_type = args.content_type
        job.geocode_bias = bias

    extractor = CallsheetExtractor(
        geocoder=build_geocoder(),
        rate_limiter=SlidingWindowRateLimiter(),
    )
    batch = extractor.extract_batch(jobs, max_workers=args.parallel)
    output = json.dumps(
        {
            "results": [{"source": label, "data": data} for label, data in batch.results],
            "errors": [{"source": label, "error": message} for label, message in batch.errors],
            "succeeded": batch.succeeded,
            "failed": batch.failed,
        },
        ensure_ascii=False,
        indent=2,
    )

    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(output)

    print(output)


if __name__ == "__main__":
    main()
