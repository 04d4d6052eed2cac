"""File-level transforms used by the operation workers.

Every function here is blocking (file I/O and CPU-bound rendering); workers
run them through ``asyncio.to_thread``. Failures are reported as
:class:`TransformError` so a worker can record them per input.
"""
from __future__ import annotations

import enum
import html
import logging
import re
from pathlib import Path
from typing import Optional

import fitz  # PyMuPDF
from PIL import Image, UnidentifiedImageError

from .errors import TransformError, UnsupportedFormatError
from .interfaces import DocumentConverter
from .models import SplitRange

logger = logging.getLogger(__name__)

PAGE_MARGIN: float = 54.0
TEXT_CSS = """
body { font-family: serif; font-size: 12pt; line-height: 1.35; }
p { margin: 0 0 6pt 0; }
"""


class InputKind(enum.Enum):
    DOCUMENT = "document"
    TEXT = "text"
    IMAGE = "image"


_SUFFIX_KINDS: dict[str, InputKind] = {
    ".docx": InputKind.DOCUMENT,
    ".pptx": InputKind.DOCUMENT,
    ".xlsx": InputKind.DOCUMENT,
    ".html": InputKind.DOCUMENT,
    ".htm": InputKind.DOCUMENT,
    ".md": InputKind.DOCUMENT,
    ".txt": InputKind.TEXT,
    ".jpg": InputKind.IMAGE,
    ".jpeg": InputKind.IMAGE,
    ".png": InputKind.IMAGE,
    ".bmp": InputKind.IMAGE,
    ".gif": InputKind.IMAGE,
    ".tif": InputKind.IMAGE,
    ".tiff": InputKind.IMAGE,
}


def classify(path: str | Path) -> InputKind:
    suffix = Path(path).suffix.lower()
    try:
        return _SUFFIX_KINDS[suffix]
    except KeyError:
        raise UnsupportedFormatError(f"unsupported format '{suffix or Path(path).name}'") from None


def require_input(path: str | Path) -> Path:
    p = Path(path)
    if not p.is_file():
        raise TransformError(f"input file does not exist: {p.name}")
    if p.stat().st_size == 0:
        raise TransformError(f"input file is empty: {p.name}")
    return p


# ── Conversions to PDF ───────────────────────────────────────────────


def render_html_to_pdf(markup: str, output_path: str | Path, css: Optional[str] = None) -> int:
    """Lay out HTML onto A4 pages; returns the number of pages written."""
    story = fitz.Story(html=markup, user_css=css)
    writer = fitz.DocumentWriter(str(output_path))
    mediabox = fitz.paper_rect("a4")
    where = mediabox + (PAGE_MARGIN, PAGE_MARGIN, -PAGE_MARGIN, -PAGE_MARGIN)
    pages = 0
    more = 1
    try:
        while more:
            device = writer.begin_page(mediabox)
            more, _ = story.place(where)
            story.draw(device)
            writer.end_page()
            pages += 1
    finally:
        writer.close()
    return pages


def text_to_html(text: str) -> str:
    paragraphs = re.split(r"\n\s*\n", text.replace("\r\n", "\n"))
    body = "".join(
        "<p>" + "<br/>".join(html.escape(line) for line in para.split("\n")) + "</p>"
        for para in paragraphs
        if para.strip()
    )
    return f"<body>{body}</body>"


def text_to_pdf(input_path: str | Path, output_path: str | Path, converter: Optional[DocumentConverter] = None) -> None:
    src = require_input(input_path)
    text = src.read_text(encoding="utf-8", errors="replace")
    render_html_to_pdf(text_to_html(text), output_path, css=TEXT_CSS)


def image_to_pdf(input_path: str | Path, output_path: str | Path, converter: Optional[DocumentConverter] = None) -> None:
    src = require_input(input_path)
    try:
        with Image.open(src) as im:
            im.convert("RGB").save(str(output_path), "PDF", resolution=72.0)
    except (UnidentifiedImageError, OSError) as e:
        raise TransformError(f"could not read image {src.name}: {e}") from e


def document_to_pdf(input_path: str | Path, output_path: str | Path, converter: Optional[DocumentConverter] = None) -> None:
    src = require_input(input_path)
    if converter is None:
        raise TransformError("no document converter configured")
    try:
        markup = converter.convert_to_html(str(src))
    except TransformError:
        raise
    except Exception as e:
        raise TransformError(f"document conversion failed for {src.name}: {e}") from e
    render_html_to_pdf(markup, output_path)


CONVERTERS = {
    InputKind.DOCUMENT: document_to_pdf,
    InputKind.TEXT: text_to_pdf,
    InputKind.IMAGE: image_to_pdf,
}


# ── Page operations ──────────────────────────────────────────────────


def open_pdf(path: str | Path) -> fitz.Document:
    src = require_input(path)
    try:
        doc = fitz.open(str(src))
    except Exception as e:
        raise TransformError(f"could not open {src.name}: {e}") from e
    if not doc.is_pdf:
        doc.close()
        raise TransformError(f"{src.name} is not a PDF document")
    return doc


def count_pages(path: str | Path) -> int:
    with open_pdf(path) as doc:
        return doc.page_count


def clamp_range(requested: SplitRange, total_pages: int) -> SplitRange:
    """Clamp ``end`` to the last page; reject ranges that end up empty."""
    start = max(1, requested.start)
    end = min(requested.end, total_pages)
    if start > end:
        raise TransformError(
            f"page range {requested.start}-{requested.end} is empty for a {total_pages}-page document"
        )
    return SplitRange(start=start, end=end)


def extract_pages(input_path: str | Path, output_path: str | Path, page_range: SplitRange) -> int:
    with open_pdf(input_path) as src, fitz.open() as out:
        out.insert_pdf(src, from_page=page_range.start - 1, to_page=page_range.end - 1)
        out.save(str(output_path), garbage=3, deflate=True)
        return out.page_count


class DoclingConverter(DocumentConverter):
    def __init__(self) -> None:
        self._converter = None

    def convert_to_html(self, input_path: str) -> str:
        if self._converter is None:
            from docling.document_converter import DocumentConverter as _Docling  # type: ignore

            self._converter = _Docling()
        result = self._converter.convert(input_path)
        # generic extraction across variants
        doc = getattr(result, "document", None)
        if doc is None:
            to_doc = getattr(result, "to_doc", None)
            doc = to_doc() if callable(to_doc) else result
        for m in ("export_to_html", "to_html"):
            fn = getattr(doc, m, None)
            if callable(fn):
                return fn()
        # Older releases only export markdown
        for m in ("export_to_markdown", "to_markdown"):
            fn = getattr(doc, m, None)
            if callable(fn):
                return text_to_html(fn())
        raise RuntimeError("Doc object lacks an HTML or markdown export method")
