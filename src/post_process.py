"""Clean up what the model returned before it leaves the pipeline.

The model is asked for principal filming locations only, but callsheets list
basecamps, parking, catering and similar crew sites right next to the set and
models regularly let some through. This module removes them using keyword
groups from ``data/location_keywords.json`` and, when the source text is
available, the words around each mention of a location.

It also normalizes the date, drops service companies from the production
companies and repairs project names that are really document titles or
company names.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date as Date
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Pattern, Tuple

from config import Config
from extraction_schema import CallsheetExtraction


UNTITLED_PROJECT = "Untitled Project"

_COMPANY_SUFFIX = re.compile(
    r"\b(gmbh|llc|ltd\.?|inc\.?|kg|og|s\.?l\.?|s\.?a\.?|film(produktion)?|pictures|"
    r"entertainment|studio|studios)\b"
)
_COMPANY_WORD = re.compile(r"\b(produktion|production|productora|producer|producers)\b")
_SERVICE_WORDS = ("rental", "hire", "equipment", "services", "catering", "security")
_CONTACT = re.compile(r"\b(tel|phone|mobil|mobile|telefon)\b", re.IGNORECASE)
_PHONE = re.compile(r"\d{2,}[-\s]?\d{3,}[-\s]?\d{3,}")


@dataclass
class KeywordConfig:
    version: int
    non_principal: List[Tuple[str, Pattern]]
    principal_hints: List[str]
    protected_locations: List[str] = field(default_factory=list)
    document_types: List[str] = field(default_factory=list)
    min_length: int = 3
    context_window: int = 160
    max_context_checks: int = 10

    def non_principal_match(self, text: str) -> Optional[str]:
        for label, pattern in self.non_principal:
            if pattern.search(text):
                return label
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeywordConfig":
        groups = []
        for group in data.get("non_principal") or []:
            terms = [term for term in group.get("terms") or [] if term]
            if not terms:
                continue
            alternatives = "|".join(re.escape(term) for term in terms)
            groups.append((group.get("label") or terms[0], re.compile(rf"\b({alternatives})\b", re.IGNORECASE)))
        return cls(
            version=int(data.get("version", 1)),
            non_principal=groups,
            principal_hints=[hint.lower() for hint in data.get("principal_hints") or []],
            protected_locations=[loc.lower() for loc in data.get("protected_locations") or []],
            document_types=[doc.lower() for doc in data.get("document_types") or []],
            min_length=int(data.get("min_length", 3)),
            context_window=int(data.get("context_window", 160)),
            max_context_checks=int(data.get("max_context_checks", 10)),
        )


@lru_cache(maxsize=None)
def load_keyword_config(path: Optional[str] = None) -> KeywordConfig:
    config_path = Path(path) if path else Config.KEYWORDS_PATH
    data = json.loads(config_path.read_text(encoding="utf-8"))
    keywords = KeywordConfig.from_dict(data)
    logging.info(
        "Loaded location keywords v%s (%s groups) from %s",
        keywords.version,
        len(keywords.non_principal),
        config_path,
    )
    return keywords


def dedupe_preserving_order(values: Iterable[str]) -> List[str]:
    seen = set()
    result: List[str] = []
    for value in values:
        cleaned = (value or "").strip()
        if not cleaned:
            continue
        key = cleaned.casefold()
        if key in seen:
            continue
        seen.add(key)
        result.append(cleaned)
    return result


def looks_like_company_name(value: str) -> bool:
    if not value:
        return False
    lowered = value.lower()
    return bool(_COMPANY_SUFFIX.search(lowered) or _COMPANY_WORD.search(lowered))


def is_non_production_company(value: str) -> bool:
    lowered = (value or "").lower().strip()
    return any(word in lowered for word in _SERVICE_WORDS)


def is_principal_filming_location(location: str, keywords: Optional[KeywordConfig] = None) -> bool:
    keywords = keywords or load_keyword_config()
    cleaned = (location or "").strip()
    if len(cleaned) < keywords.min_length:
        logging.debug("Filtered (too short): '%s'", location)
        return False

    lowered = cleaned.lower()
    for protected in keywords.protected_locations:
        if protected in lowered and not keywords.non_principal_match(lowered):
            return True

    label = keywords.non_principal_match(lowered)
    if label:
        logging.info("Filtered (%s): '%s'", label, cleaned)
        return False
    if looks_like_company_name(cleaned) or is_non_production_company(cleaned):
        logging.info("Filtered (looks like company): '%s'", cleaned)
        return False
    if "@" in cleaned or _CONTACT.search(cleaned):
        logging.info("Filtered (contact info): '%s'", cleaned)
        return False
    if _PHONE.search(cleaned):
        logging.info("Filtered (likely phone): '%s'", cleaned)
        return False
    return True


def classify_context(location: str, source_text: str, keywords: Optional[KeywordConfig] = None) -> str:
    """Look at the text around each mention of ``location``.

    Returns ``principal`` when the surroundings only carry filming hints,
    ``non`` when they only carry crew logistics keywords and ``unknown``
    otherwise (both, neither, or the location never appears).
    """
    keywords = keywords or load_keyword_config()
    if not location or not source_text:
        return "unknown"
    haystack = source_text.lower()
    needle = location.lower().strip()
    if not needle:
        return "unknown"

    found_principal = False
    found_non = False
    position = 0
    for _ in range(keywords.max_context_checks):
        index = haystack.find(needle, position)
        if index == -1:
            break
        start = max(0, index - keywords.context_window)
        end = min(len(haystack), index + len(needle) + keywords.context_window)
        window = haystack[start:end]
        if any(hint in window for hint in keywords.principal_hints):
            found_principal = True
        if keywords.non_principal_match(window):
            found_non = True
        position = index + len(needle)

    if found_principal and not found_non:
        return "principal"
    if found_non and not found_principal:
        return "non"
    return "unknown"


def filter_locations(
    locations: Iterable[str],
    source_text: str = "",
    keywords: Optional[KeywordConfig] = None,
) -> List[str]:
    keywords = keywords or load_keyword_config()
    kept: List[str] = []
    for location in locations or []:
        if not isinstance(location, str):
            continue
        cleaned = location.strip()
        if not cleaned or not is_principal_filming_location(cleaned, keywords):
            continue
        if source_text and classify_context(cleaned, source_text, keywords) == "non":
            logging.info("Filtered by context (non-principal): '%s'", cleaned)
            continue
        kept.append(cleaned)

    result = dedupe_preserving_order(kept)
    if not result:
        logging.warning("No principal filming locations left after filtering")
    return result


def clean_production_companies(companies: Iterable[str]) -> List[str]:
    kept = []
    for company in companies or []:
        cleaned = (company or "").strip()
        if not cleaned:
            continue
        if is_non_production_company(cleaned):
            logging.info("Filtered non-production company: '%s'", cleaned)
            continue
        kept.append(cleaned)
    return dedupe_preserving_order(kept)


_MONTHS = {
    # English
    "january": 1, "jan": 1, "february": 2, "feb": 2, "march": 3, "mar": 3,
    "april": 4, "apr": 4, "may": 5, "june": 6, "jun": 6, "july": 7, "jul": 7,
    "august": 8, "aug": 8, "september": 9, "sep": 9, "sept": 9,
    "october": 10, "oct": 10, "november": 11, "nov": 11, "december": 12, "dec": 12,
    # German
    "januar": 1, "jänner": 1, "jaenner": 1, "februar": 2, "feber": 2, "märz": 3,
    "maerz": 3, "mär": 3, "mai": 5, "juni": 6, "juli": 7, "okt": 10, "oktober": 10,
    "dezember": 12, "dez": 12,
    # Spanish
    "enero": 1, "ene": 1, "febrero": 2, "marzo": 3, "abril": 4, "abr": 4, "mayo": 5,
    "junio": 6, "julio": 7, "agosto": 8, "ago": 8, "septiembre": 9, "setiembre": 9,
    "octubre": 10, "noviembre": 11, "diciembre": 12, "dic": 12,
}


def _valid_date(year: int, month: int, day: int) -> Optional[str]:
    if year < 100:
        year += 2000
    try:
        return Date(year, month, day).isoformat()
    except ValueError:
        return None


def normalize_date(value: Optional[str]) -> str:
    """Normalize a shooting date to YYYY-MM-DD, or "" when none is recognizable."""
    if value is None:
        return ""
    text = str(value).strip()
    if not text:
        return ""

    match = re.search(r"\b(\d{4})[-/\.](\d{1,2})[-/\.](\d{1,2})\b", text)
    if match:
        year, month, day = map(int, match.groups())
        normalized = _valid_date(year, month, day)
        if normalized:
            return normalized

    # Day first: 06.05.2024, 6/5/24
    match = re.search(r"\b(\d{1,2})[-/\.](\d{1,2})[-/\.](\d{2,4})\b", text)
    if match:
        day, month, year = map(int, match.groups())
        normalized = _valid_date(year, month, day)
        if normalized:
            return normalized

    lowered = text.lower()
    # 6. Mai 2024, 6 de mayo de 2024, 6 May 2024
    match = re.search(r"\b(\d{1,2})\.?\s*(?:de\s+)?([^\W\d_]+)\.?,?\s*(?:de\s+)?(\d{4})\b", lowered)
    if match:
        month = _MONTHS.get(match.group(2))
        if month:
            normalized = _valid_date(int(match.group(3)), month, int(match.group(1)))
            if normalized:
                return normalized

    # May 6, 2024 / May 6th 2024
    match = re.search(r"\b([^\W\d_]+)\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})\b", lowered)
    if match:
        month = _MONTHS.get(match.group(1))
        if month:
            normalized = _valid_date(int(match.group(3)), month, int(match.group(2)))
            if normalized:
                return normalized

    logging.warning("Could not normalize date '%s'", text)
    return ""


def is_document_type(value: str, keywords: Optional[KeywordConfig] = None) -> bool:
    keywords = keywords or load_keyword_config()
    if not value:
        return False
    normalized = value.lower().strip()
    for doc_type in keywords.document_types:
        if normalized == doc_type or normalized.startswith(doc_type + " "):
            return True
    return bool(
        re.match(r"^(call[\s-]?sheet|disposici[oó]n|drehplan)\s*(#?\d+|\d+\s*of\s*\d+)?$", normalized)
    )


_CONTEXT_STOPWORDS = {"CALL", "SHEET", "HOJA", "RODAJE", "DISPO"}
_HEADER_STOPWORDS = {"CALL", "SHEET", "DATE", "TIME", "CREW", "CAST", "PAGE", "PROD"}


def infer_project_name_from_context(source_text: str) -> Optional[str]:
    if not source_text:
        return None
    match = re.search(
        r"([A-Z][A-Z0-9_-]{3,20})[\s_-]*(call[\s_-]?sheet|hoja[\s_-]?de[\s_-]?rodaje|dispo)",
        source_text,
        re.IGNORECASE,
    )
    if match:
        candidate = re.sub(r"[_-]", " ", match.group(1)).strip()
        if candidate.upper() not in _CONTEXT_STOPWORDS:
            return candidate

    header = source_text[:1000]
    match = re.search(r"\b([A-Z][A-Z0-9]{3,11})\b", header)
    if match and match.group(1) not in _HEADER_STOPWORDS:
        return match.group(1)

    match = re.search(
        r"(?:project|serie|film|titulo|título|title|show):\s*([A-Za-z0-9][A-Za-z0-9 -]{2,30})",
        source_text,
        re.IGNORECASE,
    )
    if match:
        candidate = match.group(1).strip()
        if not looks_like_company_name(candidate) and not is_non_production_company(candidate):
            return candidate
    return None


def infer_project_name_from_filename(file_name: str) -> Optional[str]:
    if not file_name:
        return None
    stem = re.sub(r"\.(pdf|png|jpg|jpeg|txt|csv)$", "", Path(file_name).name, flags=re.IGNORECASE)
    match = re.match(r"^([A-Z][A-Z0-9_-]{2,20}?)[\s_-]*(call[\s_-]?sheet|hoja|dispo)", stem, re.IGNORECASE)
    if match:
        return re.sub(r"[_-]", " ", match.group(1)).strip()
    match = re.match(r"^([A-Z][A-Z0-9]{3,11})$", stem)
    if match:
        return match.group(1)
    match = re.match(r"^([A-Za-z0-9][A-Za-z0-9 ]{2,30}?)[\s_-]+(call|sheet|hoja|dispo)", stem, re.IGNORECASE)
    if match:
        return match.group(1).strip()
    return None


def resolve_project_name(project_name: Optional[str], source_text: str = "", file_name: str = "") -> str:
    name = (project_name or "").strip()
    if name and is_document_type(name):
        logging.warning("Rejected projectName '%s': document type, not a project", name)
        name = ""
    if name and (looks_like_company_name(name) or is_non_production_company(name)):
        logging.warning("Rejected projectName '%s': looks like a company", name)
        name = ""
    if not name and source_text:
        name = infer_project_name_from_context(source_text) or ""
        if name:
            logging.info("Inferred projectName from text: '%s'", name)
    if not name and file_name:
        name = infer_project_name_from_filename(file_name) or ""
        if name:
            logging.info("Inferred projectName from file name: '%s'", name)
    if not name:
        logging.warning("Could not determine projectName, using '%s'", UNTITLED_PROJECT)
        name = UNTITLED_PROJECT
    return name


def normalize_crew_first(data: Dict[str, Any]) -> Dict[str, Any]:
    """Clamp confidences and trim notes of a verified crew-first record."""
    normalized = dict(data)
    normalized["date"] = normalize_date(data.get("date"))
    locations = []
    for location in data.get("locations") or []:
        item = dict(location)
        confidence = item.get("confidence")
        if confidence is not None:
            item["confidence"] = round(min(1.0, max(0.0, float(confidence))), 3)
        if "notes" in item:
            item["notes"] = [note.strip() for note in item["notes"] if note.strip()][:2]
        locations.append(item)
    normalized["locations"] = locations
    normalized["rutas"] = list(data.get("rutas") or [])
    return normalized


def crew_first_to_extraction(data: Dict[str, Any]) -> CallsheetExtraction:
    """Project a crew-first record onto the simple extraction record."""
    company = (data.get("productionCompany") or "").strip()
    return {
        "date": data.get("date") or "",
        "projectName": data.get("projectName") or "",
        "productionCompanies": [company] if company else [],
        "locations": [
            location.get("address", "")
            for location in data.get("locations") or []
            if location.get("location_type") == "FILMING_PRINCIPAL"
        ],
    }


def post_process_extraction(
    data: CallsheetExtraction,
    source_text: str = "",
    file_name: str = "",
) -> CallsheetExtraction:
    keywords = load_keyword_config()
    locations = filter_locations(data.get("locations") or [], source_text, keywords)
    result: CallsheetExtraction = {
        "date": normalize_date(data.get("date")),
        "projectName": resolve_project_name(data.get("projectName"), source_text, file_name),
        "productionCompanies": clean_production_companies(data.get("productionCompanies") or []),
        "locations": locations,
    }
    logging.info(
        "Post-processed '%s': %s of %s location(s) kept",
        result["projectName"],
        len(locations),
        len(data.get("locations") or []),
    )
    return result
