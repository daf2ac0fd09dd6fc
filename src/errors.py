from typing import Optional


class ExtractorError(RuntimeError):
    """Base error for the extraction pipeline.

    Every error carries a short machine ``code`` and a human readable message.
    The HTTP layer maps ``status`` onto the response.
    """

    status = 500

    def __init__(self, code: str, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details

    def to_payload(self) -> dict:
        payload = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InputError(ExtractorError):
    """no_input, requires_ocr or pdf_parse_error."""

    status = 400


class ProviderEmptyResponse(ExtractorError):
    status = 502

    def __init__(self, message: str = "Empty response from AI provider."):
        super().__init__("empty_response", message)


class AIExtractionFailed(ExtractorError):
    status = 502

    def __init__(self, message: str = "AI extraction failed.", details: Optional[str] = None):
        super().__init__("ai_extraction_failed", message, details)


class SchemaViolation(ExtractorError):
    status = 502

    def __init__(self, message: str = "AI returned invalid JSON.", details: Optional[str] = None):
        super().__init__("ai_invalid_json", message, details)


class ProviderHttpError(ExtractorError):
    def __init__(self, provider: str, status: int, message: str, details: Optional[str] = None):
        super().__init__("provider_http_error", message, details)
        self.provider = provider
        self.upstream_status = status
        if status in (400, 401, 405, 429, 504):
            self.status = status
        else:
            self.status = 502


class RateLimitExceeded(ExtractorError):
    status = 429

    def __init__(self, retry_after: int, message: str = "Rate limit exceeded."):
        super().__init__("rate_limited", message, f"Retry after {retry_after} seconds.")
        self.retry_after = retry_after


class GeocodingFailure(ExtractorError):
    status = 502

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__("geocoding_failed", message, details)


def no_input(message: str = "No input provided.") -> InputError:
    return InputError("no_input", message)


def requires_ocr(message: str) -> InputError:
    return InputError("requires_ocr", message)


def pdf_parse_error(message: str = "Could not read PDF.", details: Optional[str] = None) -> InputError:
    return InputError("pdf_parse_error", message, details)
