import base64
import io
from types import SimpleNamespace

import pytest
from PIL import Image

import input_normalizer
from config import Config
from errors import InputError
from input_normalizer import (
    ExtractionInput,
    UploadedFile,
    clean_ocr_text,
    detect_kind,
    normalize,
    normalize_agent,
    normalize_direct,
    normalize_vision,
)

from fakes import image_bytes


class FakePdf:
    def __init__(self, pages):
        self.pages = [SimpleNamespace(extract_text=lambda text=text: text) for text in pages]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture
def pdf_text(monkeypatch):
    """Make pdfplumber return the given page texts."""

    def install(pages):
        monkeypatch.setattr(input_normalizer.pdfplumber, "open", lambda stream: FakePdf(pages))

    return install


@pytest.fixture
def broken_pdf(monkeypatch):
    def fail(stream):
        raise ValueError("No /Root object! - Is this really a PDF?")

    monkeypatch.setattr(input_normalizer.pdfplumber, "open", fail)


@pytest.fixture
def ocr(monkeypatch):
    calls = []

    def fake_ocr(image):
        calls.append(image.size)
        return "Drehort: Salm\u2013gasse 10\r\n\n\n\nWien"

    monkeypatch.setattr(input_normalizer, "_ocr", fake_ocr)
    return calls


def pdf_file(name="dispo.pdf"):
    return UploadedFile(name=name, content=b"%PDF-1.4 fake", mime_type="application/pdf")


def decode_jpeg(b64):
    return Image.open(io.BytesIO(base64.b64decode(b64)))


def test_detect_kind():
    assert detect_kind(UploadedFile("a.PDF", b"")) == "pdf"
    assert detect_kind(UploadedFile("scan", b"", "image/png")) == "image"
    assert detect_kind(UploadedFile("crew.csv", b"")) == "csv"
    assert detect_kind(UploadedFile("x", b"", "text/csv")) == "csv"
    assert detect_kind(UploadedFile("notes.txt", b"")) == "text"
    assert detect_kind(UploadedFile("sheet.xlsx", b"")) is None


def test_clean_ocr_text_normalizes_dashes_and_blank_lines():
    raw = "Salm\u2013gasse  \r\n\n\n\nDreh-\nort"
    assert clean_ocr_text(raw) == "Salm-gasse\n\nDrehort"


def test_direct_pasted_text_is_trimmed():
    result = normalize_direct(ExtractionInput(text="  Drehort: Salmgasse 10 \n"))
    assert result.text == "Drehort: Salmgasse 10"
    assert result.source_kind == "text"
    assert result.image is None


def test_direct_without_input_is_no_input():
    with pytest.raises(InputError) as excinfo:
        normalize_direct(ExtractionInput(text="   "))
    assert excinfo.value.code == "no_input"


def test_direct_text_file_strips_bom():
    file = UploadedFile("dispo.txt", "\ufeffDrehort: Prater".encode("utf-8"), "text/plain")
    result = normalize_direct(ExtractionInput(file=file))
    assert result.text == "Drehort: Prater"
    assert result.file_name == "dispo.txt"


def test_text_file_that_is_not_utf8_is_no_input():
    file = UploadedFile("dispo.txt", b"Drehort \xff\xfe Prater", "text/plain")
    with pytest.raises(InputError) as excinfo:
        normalize_direct(ExtractionInput(file=file))
    assert excinfo.value.code == "no_input"
    assert "dispo.txt" in excinfo.value.message


def test_csv_is_passed_through_verbatim():
    csv_text = "Motiv,Adresse\nWohnung,\"Salmgasse 10, 1030 Wien\"\n"
    file = UploadedFile("dispo.csv", csv_text.encode("utf-8"), "text/csv")
    result = normalize_agent(ExtractionInput(file=file))
    assert result.source_kind == "csv"
    assert result.text == csv_text.strip()


def test_direct_pdf_uses_text_layer(pdf_text):
    pdf_text(["Page one ", "", " Page two"])
    result = normalize_direct(ExtractionInput(file=pdf_file()))
    assert result.text == "Page one\n\nPage two"
    assert result.source_kind == "pdf"


def test_direct_pdf_without_text_layer_requires_ocr(pdf_text):
    pdf_text(["", None])
    with pytest.raises(InputError) as excinfo:
        normalize_direct(ExtractionInput(file=pdf_file()))
    assert excinfo.value.code == "requires_ocr"
    assert "Agent Mode" in excinfo.value.message


def test_direct_unreadable_pdf_is_parse_error(broken_pdf):
    with pytest.raises(InputError) as excinfo:
        normalize_direct(ExtractionInput(file=pdf_file()))
    assert excinfo.value.code == "pdf_parse_error"
    assert "No /Root" in excinfo.value.details


def test_direct_image_requires_ocr():
    file = UploadedFile("scan.png", image_bytes(), "image/png")
    with pytest.raises(InputError) as excinfo:
        normalize_direct(ExtractionInput(file=file))
    assert excinfo.value.code == "requires_ocr"


def test_direct_unsupported_file_is_no_input():
    file = UploadedFile("sheet.xlsx", b"PK\x03\x04", "application/vnd.ms-excel")
    with pytest.raises(InputError) as excinfo:
        normalize_direct(ExtractionInput(file=file))
    assert excinfo.value.code == "no_input"
    assert "Unsupported file type" in excinfo.value.message


def test_agent_falls_back_to_ocr_for_scanned_pdf(monkeypatch, pdf_text, ocr):
    pdf_text([""])
    monkeypatch.setattr(
        input_normalizer,
        "convert_from_bytes",
        lambda content, dpi: [Image.new("RGB", (30, 40)), Image.new("RGB", (30, 40))],
    )
    result = normalize_agent(ExtractionInput(file=pdf_file()))
    assert len(ocr) == 2
    assert result.source_kind == "pdf"
    assert result.text.startswith("Drehort: Salm-gasse 10\n\nWien")


def test_agent_ocrs_images(ocr):
    file = UploadedFile("scan.jpg", image_bytes(fmt="JPEG"), "image/jpeg")
    result = normalize_agent(ExtractionInput(file=file))
    assert ocr == [(64, 48)]
    assert result.text == "Drehort: Salm-gasse 10\n\nWien"
    assert result.source_kind == "image"


def test_agent_keeps_text_layer_when_present(pdf_text, ocr):
    pdf_text(["Drehort: Prater"])
    result = normalize_agent(ExtractionInput(file=pdf_file()))
    assert result.text == "Drehort: Prater"
    assert ocr == []


def test_vision_image_is_resized_and_reencoded(monkeypatch):
    monkeypatch.setattr(Config, "VISION_MAX_DIMENSION", 32)
    file = UploadedFile("scan.png", image_bytes(size=(128, 64)), "image/png")
    result = normalize_vision(ExtractionInput(file=file))
    image = decode_jpeg(result.image)
    assert image.format == "JPEG"
    assert max(image.size) <= 32
    assert result.text == ""


def test_vision_small_image_keeps_size():
    file = UploadedFile("scan.png", image_bytes(size=(64, 48)), "image/png")
    result = normalize_vision(ExtractionInput(file=file))
    assert decode_jpeg(result.image).size == (64, 48)


def test_vision_pdf_renders_first_page_with_text(monkeypatch, pdf_text):
    rendered = {}

    def fake_convert(content, dpi, first_page=None, last_page=None):
        rendered.update(dpi=dpi, first_page=first_page, last_page=last_page)
        return [Image.new("RGB", (100, 140))]

    monkeypatch.setattr(input_normalizer, "convert_from_bytes", fake_convert)
    pdf_text(["Drehort: Prater"])
    result = normalize_vision(ExtractionInput(file=pdf_file()))
    assert rendered == {"dpi": Config.VISION_DPI, "first_page": 1, "last_page": 1}
    assert result.text == "Drehort: Prater"
    assert decode_jpeg(result.image).size == (100, 140)


def test_vision_render_failure_is_parse_error(monkeypatch):
    def fail(*args, **kwargs):
        raise RuntimeError("poppler not installed")

    monkeypatch.setattr(input_normalizer, "convert_from_bytes", fail)
    with pytest.raises(InputError) as excinfo:
        normalize_vision(ExtractionInput(file=pdf_file()))
    assert excinfo.value.code == "pdf_parse_error"


def test_vision_continues_with_image_only_when_text_and_ocr_fail(monkeypatch, broken_pdf):
    def fake_convert(content, dpi, first_page=None, last_page=None):
        return [Image.new("RGB", (20, 20))]

    def failing_ocr(image):
        raise RuntimeError("tesseract missing")

    monkeypatch.setattr(input_normalizer, "convert_from_bytes", fake_convert)
    monkeypatch.setattr(input_normalizer, "_ocr", failing_ocr)
    result = normalize_vision(ExtractionInput(file=pdf_file()))
    assert result.text == ""
    assert result.image


def test_vision_requires_a_file():
    with pytest.raises(InputError) as excinfo:
        normalize_vision(ExtractionInput(text="Drehort: Prater"))
    assert excinfo.value.code == "no_input"


def test_normalize_dispatches_by_mode(pdf_text):
    pdf_text([""])
    with pytest.raises(InputError) as excinfo:
        normalize("direct", ExtractionInput(file=pdf_file()))
    assert excinfo.value.code == "requires_ocr"
    assert normalize("agent", ExtractionInput(text="a\u2014b")).text == "a-b"
