"""Default renderer: placeholder substitution into PDF and/or DOCX output."""

import os
from typing import Any, Dict

import docx

from docbatch.rendering.base import DocumentRenderer, OutputFormat, RenderedDocument
from docbatch.rendering.pdf import render_text_pdf
from docbatch.templates.placeholders import substitute


class TemplateRenderer(DocumentRenderer):
    """Fills a text template with one row and writes the requested formats."""

    def render(
        self,
        template_text: str,
        row: Dict[str, Any],
        output_format: OutputFormat,
        out_dir: str,
        stem: str,
    ) -> RenderedDocument:
        text = substitute(template_text, row)
        os.makedirs(out_dir, exist_ok=True)
        rendered = RenderedDocument()
        for ext in output_format.extensions():
            path = os.path.join(out_dir, f"{stem}.{ext}")
            if ext == "pdf":
                render_text_pdf(text, path)
            else:
                write_docx(text, path)
            rendered.files.append(path)
        return rendered


def write_docx(text: str, path: str) -> None:
    """One paragraph per line of ``text``."""
    document = docx.Document()
    for line in text.splitlines() or [""]:
        document.add_paragraph(line)
    document.save(path)
