"""Template text extraction: turn an uploaded template into a text buffer."""

import io
import os
from typing import List

import docx
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from docbatch.errors import ValidationError

SUPPORTED_TEMPLATE_EXTENSIONS = (".txt", ".md", ".html", ".htm", ".docx", ".pdf")


def template_extension(filename: str) -> str:
    ext = os.path.splitext(filename or "")[1].lower()
    if ext not in SUPPORTED_TEMPLATE_EXTENSIONS:
        raise ValidationError(
            f"Invalid template format '{ext or filename}'. "
            f"Allowed: {', '.join(SUPPORTED_TEMPLATE_EXTENSIONS)}"
        )
    return ext


def extract_template_text(filename: str, raw: bytes) -> str:
    """Return the template's text with placeholder markers intact."""
    ext = template_extension(filename)
    if ext == ".docx":
        return _docx_text(raw)
    if ext == ".pdf":
        return _pdf_text(raw)
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def _docx_text(raw: bytes) -> str:
    try:
        document = docx.Document(io.BytesIO(raw))
    except Exception as exc:  # python-docx raises several unrelated types
        raise ValidationError(f"Template is not a readable DOCX file: {exc}")
    lines: List[str] = [p.text for p in document.paragraphs]
    for table in document.tables:
        for row in table.rows:
            lines.append("\t".join(cell.text for cell in row.cells))
    return "\n".join(lines)


def _pdf_text(raw: bytes) -> str:
    try:
        reader = PdfReader(io.BytesIO(raw))
        return "\n".join(page.extract_text() or "" for page in reader.pages)
    except PdfReadError as exc:
        raise ValidationError(f"Template is not a readable PDF file: {exc}")
