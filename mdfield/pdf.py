"""Page-number stamping for PDFs printed from the preview.

Needs the optional ``pdf`` extra (pypdf and reportlab); both are imported
on first use so the rest of mdfield works without them.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from io import BytesIO

logger = logging.getLogger(__name__)

DEFAULT_BODY_FONT_SIZE = 10.5
FOOTER_FONT = "Helvetica"

_FONT_SIZE_RE = re.compile(rb"([0-9]+(?:\.[0-9]+)?)\s+Tf\b")


@dataclass(frozen=True)
class PageLayout:
    """Where the printed page goes on the stamped page, in PDF points."""

    scale: float
    offset_x: float
    offset_y: float
    footer_font_size: float
    footer_baseline: float


def _require_pdf_libraries():
    try:
        import pypdf
    except ImportError as exc:
        raise RuntimeError("Missing dependency 'pypdf' for PDF page numbering") from exc
    try:
        from reportlab.pdfgen import canvas
    except ImportError as exc:
        raise RuntimeError("Missing dependency 'reportlab' for PDF page numbering") from exc
    return pypdf, canvas


def estimate_body_font_size(pages, sample: int = 5) -> float:
    """Most common ``Tf`` size across the first pages, in half-point buckets."""
    counts: dict[float, int] = {}
    for page in list(pages)[:sample]:
        try:
            contents = page.get_contents()
        except Exception:
            continue
        if contents is None:
            continue
        streams = contents if isinstance(contents, list) else [contents]
        for stream in streams:
            try:
                raw = stream.get_data()
            except Exception:
                continue
            for match in _FONT_SIZE_RE.finditer(raw or b""):
                size = float(match.group(1))
                if 6.0 <= size <= 24.0:
                    bucket = round(size * 2.0) / 2.0
                    counts[bucket] = counts.get(bucket, 0) + 1
    if not counts:
        return DEFAULT_BODY_FONT_SIZE
    return max(counts.items(), key=lambda item: (item[1], -abs(item[0] - 11.0)))[0]


def page_layout(width: float, height: float, body_font_size: float) -> PageLayout:
    """Fit the page into a content box with margins and a footer band."""
    side_margin = max(34.0, min(width * 0.12, body_font_size * 4.2))
    top_margin = max(30.0, min(height * 0.10, body_font_size * 3.8))
    footer_band = max(42.0, min(height * 0.16, body_font_size * 4.4))
    box_width = max(72.0, width - 2.0 * side_margin)
    box_height = max(72.0, height - top_margin - footer_band)

    scale = min(1.0, box_width / width, box_height / height)
    offset_x = side_margin + max(0.0, (box_width - width * scale) / 2.0)
    offset_y = footer_band + max(0.0, (box_height - height * scale) / 2.0)
    footer_font_size = max(8.0, min(14.0, body_font_size * scale))
    return PageLayout(
        scale=scale,
        offset_x=offset_x,
        offset_y=offset_y,
        footer_font_size=footer_font_size,
        footer_baseline=max(12.0, (footer_band - footer_font_size) / 2.0),
    )


def stamp_page_numbers(pdf_bytes: bytes, label: str = "{page} of {total}") -> bytes:
    """Return a copy of ``pdf_bytes`` with a centered page label on every page."""
    if not pdf_bytes:
        raise ValueError("Empty PDF payload")
    pypdf, canvas = _require_pdf_libraries()

    reader = pypdf.PdfReader(BytesIO(pdf_bytes))
    total = len(reader.pages)
    if total <= 0:
        raise RuntimeError("Generated PDF has no pages")
    body_font_size = estimate_body_font_size(reader.pages)

    writer = pypdf.PdfWriter()
    for number, page in enumerate(reader.pages, start=1):
        width = float(page.mediabox.width)
        height = float(page.mediabox.height)
        if width <= 0 or height <= 0:
            writer.add_page(page)
            continue
        layout = page_layout(width, height, body_font_size)

        composed = pypdf.PageObject.create_blank_page(width=width, height=height)
        transform = pypdf.Transformation().scale(layout.scale, layout.scale).translate(layout.offset_x, layout.offset_y)
        composed.merge_transformed_page(page, transform, over=True)

        overlay_buffer = BytesIO()
        footer = canvas.Canvas(overlay_buffer, pagesize=(width, height))
        footer.setFont(FOOTER_FONT, layout.footer_font_size)
        text = label.format(page=number, total=total)
        text_width = footer.stringWidth(text, FOOTER_FONT, layout.footer_font_size)
        footer.drawString(max(0.0, (width - text_width) / 2.0), layout.footer_baseline, text)
        footer.save()

        overlay_buffer.seek(0)
        overlay = pypdf.PdfReader(overlay_buffer)
        if overlay.pages:
            composed.merge_page(overlay.pages[0])
        writer.add_page(composed)

    output = BytesIO()
    writer.write(output)
    logger.debug("stamped %d page(s)", total)
    return output.getvalue()
