"""Document renderer interface and output types."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List


class OutputFormat(str, Enum):
    PDF = "pdf"
    DOCX = "docx"
    BOTH = "both"

    def extensions(self) -> List[str]:
        if self == OutputFormat.BOTH:
            return ["pdf", "docx"]
        return [self.value]


@dataclass
class RenderedDocument:
    """Files produced for one data row, primary artifact first."""
    files: List[str] = field(default_factory=list)

    @property
    def primary(self) -> str:
        return self.files[0]


class DocumentRenderer(ABC):
    """Turns a template and one data row into output documents.

    Implementations are called from worker threads and must not share
    mutable state between calls. Any exception raised for a row is recorded
    as that row's RowRenderError and never affects other rows.
    """

    @abstractmethod
    def render(
        self,
        template_text: str,
        row: Dict[str, Any],
        output_format: OutputFormat,
        out_dir: str,
        stem: str,
    ) -> RenderedDocument:
        """Write ``<out_dir>/<stem>.<ext>`` for each requested format."""
        ...
