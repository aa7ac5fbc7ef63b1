"""
Document Renderer - merges a flat key → value map into a template source.

Templates carry {{field_name}} tokens. Two sources are supported:
- DOCX binaries (python-docx): body paragraphs, tables, headers and footers.
  A token split across several runs is merged into the paragraph's first run.
- HTML markup: tokens are substituted in the markup, which is then laid out
  as a PDF with reportlab.

Unresolved tokens become a visible [FIELD_NOT_PROVIDED] marker instead of
failing the render.
"""
import io
import re
import html
import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Set

from docx import Document
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")

DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
PDF_CONTENT_TYPE = "application/pdf"


class RenderError(Exception):
    """Template source could not be rendered."""
    pass


def missing_value_marker(name: str) -> str:
    return f"[{name.upper()}_NOT_PROVIDED]"


def removed_field_marker(name: str) -> str:
    return f"[{name.upper()}_REMOVED]"


def substitute_tokens(text: str, data: Dict[str, str], missing: Optional[Set[str]] = None) -> str:
    """Replace every {{token}}; unknown or empty tokens get the not-provided marker."""
    def _replace(match: re.Match) -> str:
        name = match.group(1)
        value = data.get(name)
        if value is None or value == "":
            if missing is not None:
                missing.add(name)
            return missing_value_marker(name)
        return str(value)

    return TOKEN_PATTERN.sub(_replace, text)


def extract_tokens(text: str) -> Set[str]:
    return set(TOKEN_PATTERN.findall(text or ""))


@dataclass
class RenderedOutput:
    content: bytes
    content_type: str
    extension: str
    sha256_hash: str
    size_bytes: int
    missing_fields: list


class TemplateRenderer(ABC):
    """Renders one template source with one data map."""

    extension: str = ""
    content_type: str = ""

    @abstractmethod
    def render(self, source, data: Dict[str, str]) -> RenderedOutput:
        pass

    def _output(self, content: bytes, missing: Set[str]) -> RenderedOutput:
        return RenderedOutput(
            content=content,
            content_type=self.content_type,
            extension=self.extension,
            sha256_hash=hashlib.sha256(content).hexdigest(),
            size_bytes=len(content),
            missing_fields=sorted(missing),
        )


# ============================================================================
# DOCX
# ============================================================================

def _iter_paragraphs(document) -> Iterable:
    """Every paragraph in body, tables (nested) and section headers/footers."""
    def _from_container(container):
        for paragraph in container.paragraphs:
            yield paragraph
        for table in getattr(container, "tables", []):
            for row in table.rows:
                for cell in row.cells:
                    yield from _from_container(cell)

    yield from _from_container(document)
    for section in document.sections:
        for part in (
            section.header,
            section.footer,
            section.first_page_header,
            section.first_page_footer,
            section.even_page_header,
            section.even_page_footer,
        ):
            if part is not None and not part.is_linked_to_previous:
                yield from _from_container(part)


def rewrite_docx_text(content: bytes, transform: Callable[[str], str]) -> bytes:
    """
    Apply a text transform to every paragraph of a DOCX that contains a token.

    When a paragraph's tokens span several runs, the transformed text is put in
    the first run and the others are emptied, keeping the first run's styling.
    """
    try:
        document = Document(io.BytesIO(content))
    except Exception as e:
        raise RenderError(f"Invalid DOCX template: {e}") from e

    for paragraph in _iter_paragraphs(document):
        runs = paragraph.runs
        if not runs:
            continue
        full_text = "".join(run.text for run in runs)
        if "{{" not in full_text:
            continue

        # Tokens contained within a single run keep per-run formatting
        per_run = sum(len(TOKEN_PATTERN.findall(run.text)) for run in runs)
        if per_run == len(TOKEN_PATTERN.findall(full_text)):
            for run in runs:
                if "{{" in run.text:
                    run.text = transform(run.text)
            continue

        runs[0].text = transform(full_text)
        for run in runs[1:]:
            run.text = ""

    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


class DocxTemplateRenderer(TemplateRenderer):
    extension = "docx"
    content_type = DOCX_CONTENT_TYPE

    def render(self, source: bytes, data: Dict[str, str]) -> RenderedOutput:
        if not source:
            raise RenderError("Template file is empty")
        missing: Set[str] = set()
        content = rewrite_docx_text(source, lambda text: substitute_tokens(text, data, missing))
        if missing:
            logger.info(f"DOCX rendered with {len(missing)} missing values: {sorted(missing)}")
        return self._output(content, missing)


# ============================================================================
# HTML → PDF
# ============================================================================

BLOCK_SPLIT = re.compile(r"(?i)<\s*(?:/p|br\s*/?|/div|/h[1-6]|/li|/tr)\s*>")
TAG_PATTERN = re.compile(r"<[^>]+>")


def html_to_paragraphs(markup: str) -> list:
    """Flatten markup to plain text blocks; block-level closers start a new paragraph."""
    blocks = []
    for chunk in BLOCK_SPLIT.split(markup or ""):
        text = html.unescape(TAG_PATTERN.sub("", chunk))
        text = re.sub(r"\s+", " ", text).strip()
        if text:
            blocks.append(text)
    return blocks


class HtmlTemplateRenderer(TemplateRenderer):
    extension = "pdf"
    content_type = PDF_CONTENT_TYPE

    def merge(self, source: str, data: Dict[str, str], missing: Optional[Set[str]] = None) -> str:
        return substitute_tokens(source or "", data, missing)

    def render(self, source: str, data: Dict[str, str]) -> RenderedOutput:
        if not source or not source.strip():
            raise RenderError("Template markup is empty")
        missing: Set[str] = set()
        merged = self.merge(source, data, missing)

        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            leftMargin=20 * mm,
            rightMargin=20 * mm,
            topMargin=20 * mm,
            bottomMargin=20 * mm,
        )
        styles = getSampleStyleSheet()
        story = []
        for block in html_to_paragraphs(merged):
            story.append(Paragraph(html.escape(block), styles["Normal"]))
            story.append(Spacer(1, 4 * mm))
        if not story:
            story.append(Spacer(1, 1))
        doc.build(story)
        return self._output(buffer.getvalue(), missing)


docx_renderer = DocxTemplateRenderer()
html_renderer = HtmlTemplateRenderer()


def get_renderer(template: Dict) -> TemplateRenderer:
    """DOCX source wins when a template carries both."""
    if template.get("docx_file_path"):
        return docx_renderer
    if template.get("html_content"):
        return html_renderer
    raise RenderError("Template has no DOCX file or HTML content")
