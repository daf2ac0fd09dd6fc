"""Turn pasted text or an uploaded file into model-ready text (and an image for vision).

Three entry points, one per extraction mode:

* ``normalize_direct``: text layer only, anything needing OCR is rejected
* ``normalize_agent``: escalates to OCR for scanned PDFs and images
* ``normalize_vision``: renders an image for the model plus best-effort text
"""
import base64
import io
import logging
import re
from dataclasses import dataclass
from typing import List, Optional

import pdfplumber
import pytesseract
from pdf2image import convert_from_bytes
from PIL import Image

from config import Config
from errors import InputError, no_input, pdf_parse_error, requires_ocr


@dataclass
class UploadedFile:
    name: str
    content: bytes
    mime_type: str = ""


@dataclass
class ExtractionInput:
    text: Optional[str] = None
    file: Optional[UploadedFile] = None


@dataclass(frozen=True)
class NormalizedContent:
    text: str
    source_kind: str
    image: Optional[str] = None
    file_name: str = ""


_DASHES = re.compile("[\u2010\u2011\u2012\u2013\u2014]")


def detect_kind(file: UploadedFile) -> Optional[str]:
    mime = (file.mime_type or "").lower()
    name = (file.name or "").lower()
    if mime == "application/pdf" or name.endswith(".pdf"):
        return "pdf"
    if mime.startswith("image/"):
        return "image"
    if "csv" in mime or name.endswith(".csv"):
        return "csv"
    if mime.startswith("text/") or name.endswith(".txt"):
        return "text"
    return None


def clean_ocr_text(text: str) -> str:
    cleaned = _DASHES.sub("-", text)
    cleaned = cleaned.replace("\r", "")
    cleaned = re.sub(r"[ \t]+\n", "\n", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    # Re-join words split by OCR hyphenation at line ends
    cleaned = re.sub(r"(\w)-\n(\w)", r"\1\2", cleaned)
    return cleaned.strip()


def read_text_file(file: UploadedFile) -> str:
    try:
        return file.content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise no_input(f"{file.name or 'File'} is not valid UTF-8 text.") from exc


def normalize_csv(text: str) -> str:
    return text.strip()


def extract_pdf_text(content: bytes) -> str:
    """Concatenate the text layer of every page.

    Raises pdf_parse_error for unreadable files and requires_ocr when the
    PDF has no text layer at all (scans).
    """
    try:
        with pdfplumber.open(io.BytesIO(content)) as pdf:
            pages = [page.extract_text() or "" for page in pdf.pages]
    except Exception as exc:
        raise pdf_parse_error(details=str(exc)) from exc

    text = "\n\n".join(page.strip() for page in pages if page.strip())
    if not text:
        raise requires_ocr("This PDF has no text layer.")
    return text


def _ocr(image: Image.Image) -> str:
    return pytesseract.image_to_string(image, lang=Config.OCR_LANG)


def ocr_pdf(content: bytes) -> str:
    try:
        pages = convert_from_bytes(content, dpi=Config.OCR_DPI)
    except Exception as exc:
        raise pdf_parse_error("Could not render PDF for OCR.", str(exc)) from exc

    texts: List[str] = []
    # One page at a time, tesseract is already multi-threaded
    for index, page in enumerate(pages, start=1):
        page_text = _ocr(page)
        logging.info("OCR page %s: %s chars", index, len(page_text))
        texts.append(page_text)
    return "\n\n".join(texts)


def ocr_image(content: bytes) -> str:
    try:
        image = Image.open(io.BytesIO(content))
        image.load()
    except Exception as exc:
        raise no_input(f"Could not read image: {exc}") from exc
    return _ocr(image)


def _encode_jpeg(image: Image.Image) -> str:
    image = image.convert("RGB")
    max_dim = Config.VISION_MAX_DIMENSION
    if max(image.size) > max_dim:
        image.thumbnail((max_dim, max_dim), Image.LANCZOS)
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=Config.VISION_JPEG_QUALITY, optimize=True)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def render_pdf_first_page(content: bytes) -> str:
    try:
        pages = convert_from_bytes(
            content, dpi=Config.VISION_DPI, first_page=1, last_page=1
        )
    except Exception as exc:
        raise pdf_parse_error("Could not render PDF page.", str(exc)) from exc
    if not pages:
        raise pdf_parse_error("Could not render PDF page.", "PDF has no pages.")
    return _encode_jpeg(pages[0])


def compress_image(content: bytes) -> str:
    try:
        image = Image.open(io.BytesIO(content))
        image.load()
    except Exception as exc:
        raise no_input(f"Could not read image: {exc}") from exc
    return _encode_jpeg(image)


def _pasted_text(extraction_input: ExtractionInput) -> Optional[str]:
    if extraction_input.text and extraction_input.text.strip():
        return extraction_input.text
    return None


def _require_file(extraction_input: ExtractionInput) -> UploadedFile:
    if extraction_input.file is None:
        raise no_input("Provide text or upload a file.")
    return extraction_input.file


def _unsupported() -> InputError:
    return no_input("Unsupported file type. Provide text, CSV, PDF or image.")


def normalize_direct(extraction_input: ExtractionInput) -> NormalizedContent:
    pasted = _pasted_text(extraction_input)
    if pasted is not None:
        return NormalizedContent(text=pasted.strip(), source_kind="text")

    file = _require_file(extraction_input)
    kind = detect_kind(file)
    if kind == "text":
        return NormalizedContent(read_text_file(file).strip(), "text", file_name=file.name)
    if kind == "csv":
        return NormalizedContent(normalize_csv(read_text_file(file)), "csv", file_name=file.name)
    if kind == "pdf":
        try:
            text = extract_pdf_text(file.content)
        except InputError as exc:
            if exc.code == "requires_ocr":
                raise requires_ocr(
                    "This PDF has no text layer. Use Agent Mode (OCR) or paste text."
                ) from exc
            raise
        return NormalizedContent(text, "pdf", file_name=file.name)
    if kind == "image":
        raise requires_ocr("Images require OCR. Use Agent Mode.")
    raise _unsupported()


def normalize_agent(extraction_input: ExtractionInput) -> NormalizedContent:
    pasted = _pasted_text(extraction_input)
    if pasted is not None:
        return NormalizedContent(text=clean_ocr_text(pasted), source_kind="text")

    file = _require_file(extraction_input)
    kind = detect_kind(file)
    if kind == "text":
        return NormalizedContent(clean_ocr_text(read_text_file(file)), "text", file_name=file.name)
    if kind == "csv":
        return NormalizedContent(normalize_csv(read_text_file(file)), "csv", file_name=file.name)
    if kind == "pdf":
        try:
            text = extract_pdf_text(file.content)
        except InputError as exc:
            logging.info("PDF text layer unavailable (%s), falling back to OCR", exc.code)
            text = clean_ocr_text(ocr_pdf(file.content))
        return NormalizedContent(text, "pdf", file_name=file.name)
    if kind == "image":
        return NormalizedContent(clean_ocr_text(ocr_image(file.content)), "image", file_name=file.name)
    raise _unsupported()


def normalize_vision(extraction_input: ExtractionInput) -> NormalizedContent:
    if extraction_input.file is None:
        raise no_input("Vision mode requires a file (PDF or image).")
    file = extraction_input.file
    kind = detect_kind(file)

    if kind == "pdf":
        image = render_pdf_first_page(file.content)
        text = ""
        try:
            text = extract_pdf_text(file.content)
        except InputError:
            try:
                text = clean_ocr_text(ocr_pdf(file.content))
            except Exception as exc:
                logging.warning("Vision PDF text and OCR both failed, using image only: %s", exc)
        return NormalizedContent(text, "pdf", image=image, file_name=file.name)
    if kind == "image":
        return NormalizedContent("", "image", image=compress_image(file.content), file_name=file.name)
    raise no_input("Vision mode supports PDF and image files only.")


def normalize(mode: str, extraction_input: ExtractionInput) -> NormalizedContent:
    if mode == "vision":
        return normalize_vision(extraction_input)
    if mode == "agent":
        return normalize_agent(extraction_input)
    return normalize_direct(extraction_input)
