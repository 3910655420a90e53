"""Unit tests for per-format extraction (real PDF/DOCX/XLSX files built in the test)."""
import io
import zipfile

import fitz
import pytest
from docx import Document
from openpyxl import Workbook

from multimodal_rag.guardrails.errors import IngestionError
from multimodal_rag.ingest.extractors import (
    FILE_TYPE_IMAGE,
    FILE_TYPE_OFFICE,
    FILE_TYPE_PDF,
    FILE_TYPE_TEXT,
    SOURCE_PDF_EMBEDDED,
    SOURCE_PDF_RENDERED,
    SOURCE_PPTX,
    DocumentExtractor,
    detect_file_type,
)
from tests.fakes import make_png


def build_pdf(path, pages_with_images=(0, 2), n_pages=3):
    colors = [(200, 30, 30), (30, 200, 30), (30, 30, 200)]
    pdf = fitz.open()
    for i in range(n_pages):
        page = pdf.new_page()
        page.insert_text((72, 72), f"Page {i + 1} describes the quarterly results in detail.")
        if i in pages_with_images:
            page.insert_image(fitz.Rect(100, 150, 260, 270), stream=make_png(colors[i % 3], (64, 48)))
    pdf.save(str(path))
    pdf.close()


_SLIDE_XML = (
    '<p:sld xmlns:p="http://schemas.openxmlformats.org/presentationml/2006/main" '
    'xmlns:a="http://schemas.openxmlformats.org/drawingml/2006/main">'
    "<p:cSld><p:spTree><p:sp><p:txBody>{paragraphs}</p:txBody></p:sp></p:spTree></p:cSld></p:sld>"
)


def build_pptx(path, slides, pictures=()):
    """Minimal slide package: one slide part per entry in slides (a list of paragraph lists), plus media pictures."""
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("[Content_Types].xml", "<Types/>")
        for n, paragraphs in enumerate(slides, start=1):
            body = "".join(f"<a:p><a:r><a:t>{p}</a:t></a:r></a:p>" for p in paragraphs)
            archive.writestr(f"ppt/slides/slide{n}.xml", _SLIDE_XML.format(paragraphs=body))
        for n, png in enumerate(pictures, start=1):
            archive.writestr(f"ppt/media/image{n}.png", png)


def test_detect_file_type_by_extension():
    assert detect_file_type("a.PDF") == FILE_TYPE_PDF
    assert detect_file_type("a.docx") == FILE_TYPE_OFFICE
    assert detect_file_type("a.pptx") == FILE_TYPE_OFFICE
    assert detect_file_type("a.jpeg") == FILE_TYPE_IMAGE
    assert detect_file_type("notes.md") == FILE_TYPE_TEXT
    assert detect_file_type("Makefile", b"all:\n\techo hi\n") == FILE_TYPE_TEXT


def test_unknown_binary_is_rejected():
    with pytest.raises(IngestionError) as ei:
        detect_file_type("blob.bin", b"\xff\xfe\x00\x81" * 50)
    assert ei.value.stage == "extraction"


def test_text_extraction(tmp_path):
    p = tmp_path / "notes.txt"
    p.write_text("Hello there.\n\nSecond paragraph.", encoding="utf-8")
    doc = DocumentExtractor().extract(p)
    assert doc.file_type == FILE_TYPE_TEXT
    assert doc.sections[0].text.startswith("Hello there.")
    assert doc.images == []


def test_blank_text_fails_extraction(tmp_path):
    p = tmp_path / "empty.txt"
    p.write_text("   \n\n ", encoding="utf-8")
    with pytest.raises(IngestionError, match="extraction stage failed"):
        DocumentExtractor().extract(p)


def test_pdf_pages_embedded_images_and_renders(tmp_path):
    p = tmp_path / "report.pdf"
    build_pdf(p)
    doc = DocumentExtractor(render_dpi=50).extract(p)

    assert doc.file_type == FILE_TYPE_PDF
    assert [s.page for s in doc.sections] == [1, 2, 3]
    assert all(s.total_pages == 3 for s in doc.sections)

    embedded = [i for i in doc.images if i.source == SOURCE_PDF_EMBEDDED]
    rendered = [i for i in doc.images if i.source == SOURCE_PDF_RENDERED]
    assert len(embedded) == 2
    assert len(rendered) == 3
    assert [i.page for i in embedded] == [1, 3]
    assert [i.image_number for i in embedded] == [1, 2]
    assert all(i.data.startswith(b"\x89PNG") for i in doc.images)
    assert embedded[0].width == 64 and embedded[0].height == 48


def test_docx_text_and_pictures(tmp_path):
    p = tmp_path / "memo.docx"
    d = Document()
    d.add_paragraph("First paragraph of the memo.")
    d.add_paragraph("Second paragraph of the memo.")
    d.add_picture(io.BytesIO(make_png((10, 120, 200), (40, 30))))
    d.save(str(p))

    doc = DocumentExtractor().extract(p)
    assert doc.file_type == FILE_TYPE_OFFICE
    assert "First paragraph" in doc.sections[0].text
    assert "\n\n" in doc.sections[0].text
    assert len(doc.images) == 1
    assert (doc.images[0].width, doc.images[0].height) == (40, 30)


def test_xlsx_rows_become_text(tmp_path):
    p = tmp_path / "budget.xlsx"
    wb = Workbook()
    ws = wb.active
    ws.title = "Q1"
    ws.append(["item", "amount"])
    ws.append(["servers", 1200])
    wb.save(str(p))

    doc = DocumentExtractor().extract(p)
    assert doc.sections[0].text.startswith("Sheet: Q1")
    assert "servers\t1200" in doc.sections[0].text


def test_pptx_one_section_per_slide(tmp_path):
    p = tmp_path / "deck.pptx"
    slides = [[f"Slide {n} title", f"Slide {n} covers roadmap item {n}."] for n in range(1, 12)]
    build_pptx(p, slides, pictures=[make_png((90, 90, 10), (50, 20))])

    doc = DocumentExtractor().extract(p)
    assert doc.file_type == FILE_TYPE_OFFICE
    assert len(doc.sections) == 11
    # slide10 and slide11 sort numerically, not lexically
    assert [s.page for s in doc.sections] == list(range(1, 12))
    assert doc.sections[9].text == "Slide 10 title\nSlide 10 covers roadmap item 10."
    assert all(s.total_pages == 11 for s in doc.sections)
    assert len(doc.images) == 1
    assert doc.images[0].source == SOURCE_PPTX
    assert (doc.images[0].width, doc.images[0].height) == (50, 20)


def test_broken_pptx_fails_extraction(tmp_path):
    p = tmp_path / "broken.pptx"
    p.write_bytes(b"not a zip archive at all")
    with pytest.raises(IngestionError, match="extraction stage failed"):
        DocumentExtractor().extract(p)


def test_legacy_office_formats_unsupported(tmp_path):
    p = tmp_path / "old.doc"
    p.write_bytes(b"\xd0\xcf\x11\xe0" + b"\x00" * 100)
    with pytest.raises(IngestionError, match="unsupported office format"):
        DocumentExtractor().extract(p)


def test_standalone_image(tmp_path):
    p = tmp_path / "photo.png"
    p.write_bytes(make_png((0, 0, 0), (20, 10)))
    doc = DocumentExtractor().extract(p)
    assert doc.file_type == FILE_TYPE_IMAGE
    assert len(doc.images) == 1
    assert (doc.images[0].width, doc.images[0].height) == (20, 10)


def test_oversize_image_fails(tmp_path):
    p = tmp_path / "big.png"
    p.write_bytes(make_png((0, 0, 0), (200, 200)))
    with pytest.raises(IngestionError, match="exceeds"):
        DocumentExtractor(max_image_bytes=10).extract(p)
