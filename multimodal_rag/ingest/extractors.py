"""
Per-format extraction: turns a persisted upload into ordered text sections plus raw images.
PDF via PyMuPDF (page text, embedded images, full-page renders), DOCX via python-docx, XLSX via openpyxl,
PPTX by reading the slide XML straight out of the zip package, images via Pillow, everything else as UTF-8 text.
"""
import io
import logging
import re
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional
from xml.etree import ElementTree as ET

import fitz  # PyMuPDF
from docx import Document as DocxDocument
from openpyxl import load_workbook
from PIL import Image

from multimodal_rag.guardrails.errors import IngestionError

logger = logging.getLogger(__name__)

STAGE = "extraction"

FILE_TYPE_PDF = "pdf"
FILE_TYPE_OFFICE = "office"
FILE_TYPE_IMAGE = "image"
FILE_TYPE_TEXT = "text"

TEXT_EXTENSIONS = {
    "txt", "md", "csv", "json", "xml", "html", "htm", "log", "yaml", "yml",
    "java", "py", "js", "ts", "sql", "sh", "c", "cpp", "h", "go", "rs",
}
OFFICE_EXTENSIONS = {"docx", "doc", "pptx", "ppt", "xlsx", "xls"}
IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "bmp", "webp", "tiff", "tif"}

SOURCE_PDF_EMBEDDED = "pdf_embedded"
SOURCE_PDF_RENDERED = "pdf_rendered"
SOURCE_DOCX = "docx"
SOURCE_PPTX = "pptx"
SOURCE_UPLOAD = "upload"

_DRAWINGML = "{http://schemas.openxmlformats.org/drawingml/2006/main}"
_SLIDE_PART = re.compile(r"^ppt/slides/slide(\d+)\.xml$")


@dataclass
class TextSection:
    """One run of extracted text; page numbers are 1-based and only set for paged formats."""
    text: str
    page: Optional[int] = None
    total_pages: Optional[int] = None


@dataclass
class RawImage:
    """Extracted image bytes (always PNG) with where they came from."""
    data: bytes
    name: str
    source: str
    width: int
    height: int
    page: Optional[int] = None
    total_pages: Optional[int] = None
    image_number: Optional[int] = None


@dataclass
class ExtractedDocument:
    file_type: str
    sections: List[TextSection] = field(default_factory=list)
    images: List[RawImage] = field(default_factory=list)


def _extension(filename: str) -> str:
    return Path(filename).suffix.lower().lstrip(".")


def detect_file_type(filename: str, head: bytes = b"") -> str:
    """Classify a file as pdf / office / image / text by extension; unknown extensions count as text when the bytes decode as UTF-8.
    Why available: Chooses the extractor; an unclassifiable binary fails the extraction stage instead of indexing garbage."""
    ext = _extension(filename)
    if ext == "pdf":
        return FILE_TYPE_PDF
    if ext in OFFICE_EXTENSIONS:
        return FILE_TYPE_OFFICE
    if ext in IMAGE_EXTENSIONS:
        return FILE_TYPE_IMAGE
    if ext in TEXT_EXTENSIONS:
        return FILE_TYPE_TEXT
    try:
        head.decode("utf-8")
    except UnicodeDecodeError as e:
        # a multi-byte char cut at the end of the sample is still text
        if e.start < len(head) - 3:
            raise IngestionError(STAGE, f"unsupported file type: {filename}")
    return FILE_TYPE_TEXT


def _to_png(data: bytes) -> tuple:
    """Normalize any Pillow-readable image to PNG; returns (png_bytes, width, height)."""
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        if img.mode not in ("RGB", "RGBA", "L", "LA"):
            img = img.convert("RGBA" if "A" in img.getbands() else "RGB")
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return buf.getvalue(), img.width, img.height


class DocumentExtractor:
    """Dispatches a persisted upload to the extractor for its file type.
    Why available: The pipeline only sees ExtractedDocument, so tests can substitute a fake extractor and new formats plug in here."""

    def __init__(self, max_image_bytes: int = 5 * 1024 * 1024, render_dpi: int = 150):
        self.max_image_bytes = max_image_bytes
        self.render_dpi = render_dpi
        self._by_type: Dict[str, Callable[[Path], ExtractedDocument]] = {
            FILE_TYPE_PDF: self.extract_pdf,
            FILE_TYPE_OFFICE: self.extract_office,
            FILE_TYPE_IMAGE: self.extract_image,
            FILE_TYPE_TEXT: self.extract_text,
        }

    def extract(self, path: Path) -> ExtractedDocument:
        path = Path(path)
        with open(path, "rb") as f:
            head = f.read(4096)
        file_type = detect_file_type(path.name, head)
        try:
            return self._by_type[file_type](path)
        except IngestionError:
            raise
        except Exception as e:
            raise IngestionError(STAGE, f"{type(e).__name__}: {e}") from e

    def extract_text(self, path: Path) -> ExtractedDocument:
        text = path.read_bytes().decode("utf-8", errors="replace")
        if not text.strip():
            raise IngestionError(STAGE, "no extractable text")
        return ExtractedDocument(file_type=FILE_TYPE_TEXT, sections=[TextSection(text=text)])

    def extract_pdf(self, path: Path) -> ExtractedDocument:
        """Per page: page text, then each embedded image, then a full-page render at the configured DPI."""
        doc = ExtractedDocument(file_type=FILE_TYPE_PDF)
        pdf = fitz.open(str(path))
        try:
            total = len(pdf)
            image_number = 0
            for i in range(total):
                page = pdf[i]
                page_no = i + 1
                text = page.get_text("text") or ""
                if text.strip():
                    doc.sections.append(TextSection(text=text, page=page_no, total_pages=total))

                for img_index, img_meta in enumerate(page.get_images(full=True)):
                    xref = img_meta[0]
                    base_image = pdf.extract_image(xref)
                    if not base_image or not base_image.get("image"):
                        continue
                    raw = base_image["image"]
                    if len(raw) > self.max_image_bytes:
                        logger.warning("embedded image over size limit skipped", extra={"page": page_no, "xref": xref})
                        continue
                    png, width, height = _to_png(raw)
                    image_number += 1
                    doc.images.append(
                        RawImage(
                            data=png,
                            name=f"{path.stem}_page{page_no}_img{img_index + 1}.png",
                            source=SOURCE_PDF_EMBEDDED,
                            width=width,
                            height=height,
                            page=page_no,
                            total_pages=total,
                            image_number=image_number,
                        )
                    )

                pix = page.get_pixmap(dpi=self.render_dpi)
                doc.images.append(
                    RawImage(
                        data=pix.tobytes("png"),
                        name=f"{path.stem}_page{page_no}_render.png",
                        source=SOURCE_PDF_RENDERED,
                        width=pix.width,
                        height=pix.height,
                        page=page_no,
                        total_pages=total,
                    )
                )
        finally:
            pdf.close()
        if not doc.sections and not doc.images:
            raise IngestionError(STAGE, "no extractable content")
        return doc

    def extract_office(self, path: Path) -> ExtractedDocument:
        ext = _extension(path.name)
        if ext == "docx":
            return self._extract_docx(path)
        if ext == "xlsx":
            return self._extract_xlsx(path)
        if ext == "pptx":
            return self._extract_pptx(path)
        raise IngestionError(STAGE, f"unsupported office format: .{ext}")

    def _extract_docx(self, path: Path) -> ExtractedDocument:
        document = DocxDocument(str(path))
        parts: List[str] = [p.text for p in document.paragraphs]
        for table in document.tables:
            for row in table.rows:
                cells = [c.text.strip() for c in row.cells if c.text.strip()]
                if cells:
                    parts.append("\t".join(cells))
        # blank-line separators keep each docx paragraph its own segment
        text = "\n\n".join(p for p in parts if p.strip())
        doc = ExtractedDocument(file_type=FILE_TYPE_OFFICE)
        if text.strip():
            doc.sections.append(TextSection(text=text))

        image_number = 0
        seen = set()
        related_parts = [document.part]
        for section in document.sections:
            for header_footer in (section.header, section.footer):
                if not header_footer.is_linked_to_previous:
                    related_parts.append(header_footer.part)
        for part in related_parts:
            for rel in part.rels.values():
                if "image" not in rel.reltype or rel.is_external:
                    continue
                blob = rel.target_part.blob
                key = rel.target_part.partname
                if key in seen:
                    continue
                seen.add(key)
                if len(blob) > self.max_image_bytes:
                    logger.warning("docx image over size limit skipped", extra={"part": str(key)})
                    continue
                png, width, height = _to_png(blob)
                image_number += 1
                doc.images.append(
                    RawImage(
                        data=png,
                        name=f"{path.stem}_img{image_number}.png",
                        source=SOURCE_DOCX,
                        width=width,
                        height=height,
                        image_number=image_number,
                    )
                )
        if not doc.sections and not doc.images:
            raise IngestionError(STAGE, "no extractable content")
        return doc

    def _extract_xlsx(self, path: Path) -> ExtractedDocument:
        wb = load_workbook(str(path), read_only=True, data_only=True)
        doc = ExtractedDocument(file_type=FILE_TYPE_OFFICE)
        try:
            for ws in wb.worksheets:
                rows = []
                for row in ws.iter_rows(values_only=True):
                    values = ["" if v is None else str(v) for v in row]
                    if any(v.strip() for v in values):
                        rows.append("\t".join(values).rstrip())
                if rows:
                    doc.sections.append(TextSection(text=f"Sheet: {ws.title}\n" + "\n".join(rows)))
        finally:
            wb.close()
        if not doc.sections:
            raise IngestionError(STAGE, "no extractable text")
        return doc

    def _extract_pptx(self, path: Path) -> ExtractedDocument:
        """One section per slide (slide number as page), one line per text paragraph; pictures under ppt/media become images."""
        doc = ExtractedDocument(file_type=FILE_TYPE_OFFICE)
        with zipfile.ZipFile(path) as archive:
            names = archive.namelist()
            slides = sorted(
                (int(m.group(1)), name) for name in names for m in [_SLIDE_PART.match(name)] if m
            )
            total = len(slides)
            for position, (_, name) in enumerate(slides, start=1):
                root = ET.fromstring(archive.read(name))
                lines = []
                for para in root.iter(f"{_DRAWINGML}p"):
                    line = "".join(t.text or "" for t in para.iter(f"{_DRAWINGML}t")).strip()
                    if line:
                        lines.append(line)
                if lines:
                    doc.sections.append(TextSection(text="\n".join(lines), page=position, total_pages=total))

            image_number = 0
            for name in sorted(names):
                if not name.startswith("ppt/media/") or _extension(name) not in IMAGE_EXTENSIONS:
                    continue
                if archive.getinfo(name).file_size > self.max_image_bytes:
                    logger.warning("pptx image over size limit skipped", extra={"part": name})
                    continue
                png, width, height = _to_png(archive.read(name))
                image_number += 1
                doc.images.append(
                    RawImage(
                        data=png,
                        name=f"{path.stem}_img{image_number}.png",
                        source=SOURCE_PPTX,
                        width=width,
                        height=height,
                        image_number=image_number,
                    )
                )
        if not doc.sections and not doc.images:
            raise IngestionError(STAGE, "no extractable content")
        return doc

    def extract_image(self, path: Path) -> ExtractedDocument:
        raw = path.read_bytes()
        if len(raw) > self.max_image_bytes:
            raise IngestionError(STAGE, f"image exceeds {self.max_image_bytes} bytes")
        png, width, height = _to_png(raw)
        image = RawImage(
            data=png,
            name=f"{path.stem}.png",
            source=SOURCE_UPLOAD,
            width=width,
            height=height,
        )
        return ExtractedDocument(file_type=FILE_TYPE_IMAGE, images=[image])
