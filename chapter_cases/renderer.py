"""
Case File Renderer
==================

Draw an ordered list of page records into a single PDF.

A page record is {type, templateVersion, data}. Every record starts a new
physical page; long Roznama logs flow onto continuation pages. Output is
byte-deterministic for identical input so issued files can be re-rendered
and compared.
"""

import logging
import os
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import simpleSplit
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.pdfgen import canvas

logger = logging.getLogger(__name__)

FALLBACK_FONT = "Helvetica"
REGISTERED_FONT = "CaseFileSans"

# DEVANAGARI DIGIT ONE
DEVANAGARI_PROBE = 0x0967

# pdfmetrics keeps a process-wide font registry
_FONT_LOCK = threading.Lock()
_REGISTERED_FONTS: Dict[str, str] = {}

PAGE_TITLES = {
    "CASE_ROZNAMA": "Case Roznama",
    "NOTICE_130": "Notice under Section 130",
    "INTERIM_BOND_125_126": "Interim Bond (Sections 125/126)",
    "ACCUSED_BOND_TIME_REQUEST": "Application for Time to Furnish Bond",
    "STATEMENT_ACCUSED": "Statement of Accused",
    "SURETY_BOND_126": "Surety Bond (Section 126)",
    "STATEMENT_WITNESS": "Statement of Witness",
    "FINAL_ORDER": "Final Order",
}


class RenderMode(str, Enum):
    DRAFT = "DRAFT"
    ISSUED = "ISSUED"
    PREVIEW = "PREVIEW"


@dataclass
class RenderResult:
    path: str


class _PageWriter:
    """Cursor over one canvas; starts continuation pages as needed."""

    def __init__(self, c, font: str, mode: RenderMode):
        self.c = c
        self.font = font
        self.mode = mode
        self.width, self.height = A4
        self.margin = 40
        self.y = self.height - 50

    def start_page(self):
        self.y = self.height - 50
        if self.mode != RenderMode.ISSUED:
            self.c.saveState()
            self.c.setFillGray(0.85)
            self.c.setFont(self.font, 60)
            self.c.translate(self.width / 2, self.height / 2)
            self.c.rotate(45)
            self.c.drawCentredString(0, 0, self.mode.value)
            self.c.restoreState()

    def text(self, value: str, size: int = 11, indent: int = 0):
        max_width = self.width - 2 * self.margin - indent
        lines = simpleSplit(str(value), self.font, size, max_width) or [""]
        for line in lines:
            if self.y < 80:
                self.c.showPage()
                self.start_page()
            self.c.setFont(self.font, size)
            self.c.drawString(self.margin + indent, self.y, line)
            self.y -= size + 6

    def rule(self):
        self.c.line(self.margin, self.y + 4, self.width - self.margin, self.y + 4)
        self.y -= 8


def _signature_label(value: Optional[str]) -> str:
    return "signature on file" if value else "signature not available"


def _draw_fields(writer: _PageWriter, data: Dict[str, Any], indent: int = 0):
    for key, value in data.items():
        label = key.replace("_", " ")
        if key == "signature":
            writer.text(f"{label}: {_signature_label(value)}", 10, indent)
        elif isinstance(value, dict):
            writer.text(f"{label}:", 11, indent)
            _draw_fields(writer, value, indent + 16)
        elif isinstance(value, list):
            writer.text(f"{label}: {', '.join(str(v) for v in value)}", 11, indent)
        else:
            writer.text(f"{label}: {'—' if value is None else value}", 11, indent)


def _draw_roznama(writer: _PageWriter, data: Dict[str, Any]):
    header = data.get("header") or {}
    _draw_fields(writer, header)
    writer.rule()

    entries = data.get("entries") or []
    if not entries:
        writer.text("No proceedings recorded.", 11)
        return

    for entry in entries:
        writer.text(f"{entry.get('date', '-')}  |  next date: {entry.get('nextDate', '-')}", 11)
        writer.text(entry.get("proceedings", ""), 11, 16)
        for person in entry.get("presentAccused") or []:
            writer.text(f"present: {person.get('name')} ({_signature_label(person.get('signature'))})", 10, 16)
        writer.rule()


PAGE_LAYOUTS = {
    "CASE_ROZNAMA": _draw_roznama,
}


class ReportLabRenderer:
    """Render page records to PDF with reportlab."""

    def __init__(self, font_path: Optional[str] = None):
        self.font_path = font_path
        self.supports_devanagari = False

    def _font(self) -> str:
        if not self.font_path or not os.path.exists(self.font_path):
            if self.font_path:
                logger.warning("Font %s not found, falling back to %s", self.font_path, FALLBACK_FONT)
            self.supports_devanagari = False
            return FALLBACK_FONT
        with _FONT_LOCK:
            name = _REGISTERED_FONTS.get(self.font_path)
            if name is None:
                name = f"{REGISTERED_FONT}{len(_REGISTERED_FONTS) + 1}"
                font = TTFont(name, self.font_path)
                pdfmetrics.registerFont(font)
                _REGISTERED_FONTS[self.font_path] = name
                if DEVANAGARI_PROBE not in font.face.charToGlyph:
                    logger.warning("Font %s has no Devanagari glyphs; Marathi text will not render",
                                   self.font_path)
            font = pdfmetrics.getFont(name)
        self.supports_devanagari = DEVANAGARI_PROBE in font.face.charToGlyph
        return name

    def render(self, pages: List[Dict[str, Any]], output_path: str, mode: RenderMode = RenderMode.DRAFT) -> RenderResult:
        if not pages:
            raise ValueError("At least one page is required to render")

        mode = RenderMode(mode)
        output = Path(output_path)
        output.parent.mkdir(parents=True, exist_ok=True)
        font = self._font()

        # One canvas per call: concurrent renders never share drawing state
        c = canvas.Canvas(str(output), pagesize=A4, invariant=1)
        c.setTitle("Case File")
        writer = _PageWriter(c, font, mode)

        for page in pages:
            page_type = page["type"]
            writer.start_page()
            writer.text(PAGE_TITLES.get(page_type, page_type.replace("_", " ").title()), 16)
            writer.text(f"template {page.get('templateVersion', 'v1')}", 8)
            writer.rule()
            layout = PAGE_LAYOUTS.get(page_type, _draw_fields)
            layout(writer, page.get("data") or {})
            c.showPage()

        c.save()
        logger.info("Rendered %d page record(s) to %s (%s)", len(pages), output, mode.value)
        return RenderResult(path=str(output))
