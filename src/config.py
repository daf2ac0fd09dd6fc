import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


class Config:
    # Base directory is 2 levels up from this file (src/config.py -> project_root)
    BASE_DIR = Path(__file__).resolve().parent.parent

    # Gemini (server-funded default provider)
    GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
    GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
    GEMINI_VISION_MODEL = os.getenv("GEMINI_VISION_MODEL") or GEMINI_MODEL

    # OpenRouter (caller-funded, key and model come with the request)
    OPENROUTER_URL = os.getenv(
        "OPENROUTER_URL", "https://openrouter.ai/api/v1/chat/completions"
    )
    OPENROUTER_REFERER = os.getenv("OPENROUTER_REFERER")
    OPENROUTER_TITLE = os.getenv("OPENROUTER_TITLE")

    # Geocoding
    GEOCODER = os.getenv("GEOCODER", "google").strip().lower()
    GOOGLE_MAPS_API_KEY = os.getenv("GOOGLE_MAPS_API_KEY")
    GOOGLE_GEOCODE_URL = os.getenv(
        "GOOGLE_GEOCODE_URL", "https://maps.googleapis.com/maps/api/geocode/json"
    )
    NOMINATIM_URL = os.getenv(
        "NOMINATIM_URL", "https://nominatim.openstreetmap.org/search"
    )
    OSM_USER_AGENT = os.getenv("OSM_USER_AGENT", "callsheet-extractor/0.1")
    OSM_DELAY_SEC = float(os.getenv("OSM_DELAY_SEC", "1.0"))

    # OCR / imaging
    OCR_LANG = os.getenv("OCR_LANG", "deu+eng+spa")
    OCR_DPI = _int_env("OCR_DPI", 300)
    VISION_DPI = _int_env("VISION_DPI", 200)
    VISION_MAX_DIMENSION = _int_env("VISION_MAX_DIMENSION", 2048)
    VISION_JPEG_QUALITY = _int_env("VISION_JPEG_QUALITY", 85)

    # Agent loop and limits
    AGENT_MAX_ATTEMPTS = 4
    RATE_LIMIT_MAX_REQUESTS = _int_env("RATE_LIMIT_MAX_REQUESTS", 10)
    RATE_LIMIT_WINDOW_SEC = _int_env("RATE_LIMIT_WINDOW_SEC", 60)
    REQUEST_TIMEOUT_SEC = float(os.getenv("REQUEST_TIMEOUT_SEC", "60"))
    GEOCODE_TIMEOUT_SEC = float(os.getenv("GEOCODE_TIMEOUT_SEC", "15"))

    # Data files
    KEYWORDS_PATH = Path(
        os.getenv("KEYWORDS_PATH", str(BASE_DIR / "data" / "location_keywords.json"))
    )
    PROMPTS_DIR = Path(os.getenv("PROMPTS_DIR", str(BASE_DIR / "prompts")))

    # Logging
    LOG_FILE = Path(os.getenv("LOG_FILE", str(BASE_DIR / "extractor.log")))

    @classmethod
    def validate(cls):
        """Check for critical configuration errors."""
        if not cls.GEMINI_API_KEY:
            raise ValueError("GEMINI_API_KEY not set in .env file.")
        if cls.GEOCODER not in {"google", "osm", "none"}:
            raise ValueError(f"Unknown GEOCODER '{cls.GEOCODER}' (use google, osm or none).")
        if cls.GEOCODER == "google" and not cls.GOOGLE_MAPS_API_KEY:
            raise ValueError("GOOGLE_MAPS_API_KEY not set in .env file.")

    @classmethod
    def setup_logging(cls):
        """Configure logging to file and console."""
        import logging

        file_handler = logging.FileHandler(cls.LOG_FILE, encoding="utf-8")
        stream_handler = logging.StreamHandler()

        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
        file_handler.setFormatter(formatter)
        stream_handler.setFormatter(formatter)

        logger = logging.getLogger()
        logger.setLevel(logging.INFO)

        # Avoid duplicate handlers when main() runs more than once in a process
        if not logger.handlers:
            logger.addHandler(file_handler)
            logger.addHandler(stream_handler)
        else:
            logging.basicConfig(
                level=logging.INFO, handlers=[file_handler, stream_handler], force=True
            )
