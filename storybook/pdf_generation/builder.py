"""
Render stories into paginated PDF documents.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from io import BytesIO
from pathlib import Path
from typing import Sequence

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, LETTER
from reportlab.lib.units import inch
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfgen import canvas

from storybook.errors import ImageResolutionError
from storybook.models import Story, StoryBundle, StoryPage

from .images import ImageResolver

logger = logging.getLogger(__name__)

IMAGE_PLACEHOLDER = "[Image unavailable]"
DEFAULT_MAX_CONTENT_PAGES = 8


@dataclass(frozen=True)
class PageLayoutConfig:
    """
    Fonts, sizes and spacing of the rendered document, in PDF points.

    ``bottom_limit`` is the lowest baseline a line of body text may use
    before the text continues on a fresh page.
    """

    margin: float = 30.0
    header_font: str = "Helvetica-Bold"
    header_size: float = 12.0
    body_font: str = "Helvetica"
    body_size: float = 12.0
    leading: float = 18.0
    max_image_height: float = 400.0
    bottom_limit: float = 60.0
    title_font: str = "Helvetica-Bold"
    title_size: float = 28.0
    subtitle_size: float = 14.0
    cover_background: colors.Color = field(default_factory=lambda: colors.HexColor("#6C4FD3"))
    cover_text_color: colors.Color = field(default_factory=lambda: colors.white)
    text_color: colors.Color = field(default_factory=lambda: colors.HexColor("#2F2A40"))
    caption_color: colors.Color = field(default_factory=lambda: colors.HexColor("#4B506D"))


DEFAULT_LAYOUT = PageLayoutConfig()


PAGE_SIZES = {
    "a4": A4,
    "letter": LETTER,
    "square": (8 * inch, 8 * inch),
}


def wrap_text(text: str, font_name: str, font_size: float, max_width: float) -> list[str]:
    """
    Greedy word wrap.

    Words are added to the current line until the next one would overflow
    ``max_width``. A single word wider than the line gets a line to itself.
    Explicit newlines start a new line; blank lines are kept.
    """
    lines: list[str] = []
    for paragraph in text.splitlines():
        words = paragraph.split()
        if not words:
            lines.append("")
            continue
        current = words[0]
        for word in words[1:]:
            candidate = f"{current} {word}"
            if pdfmetrics.stringWidth(candidate, font_name, font_size) <= max_width:
                current = candidate
            else:
                lines.append(current)
                current = word
        lines.append(current)

    while lines and not lines[-1]:
        lines.pop()
    return lines


class StorybookPDFBuilder:
    """
    Render a story into a printable PDF.

    The document has a cover page (title plus "A story for ..." subtitle)
    followed by one section per story page, in ``page_number`` order: a
    "Page N" header, the illustration scaled to fit, then the word-wrapped
    text. Long text continues on additional pages. An image that cannot be
    resolved is replaced by an ``[Image unavailable]`` line; rendering never
    fails because of an image.

    Parameters
    ----------
    page_size:
        Page dimensions in points; US Letter by default.
    layout:
        Fonts and spacing.
    resolver:
        Resolves image references; a default :class:`ImageResolver` with the
        standard limits is used when omitted.
    max_content_pages:
        Upper bound on story pages rendered per document. ``None`` lifts it.
    page_compression:
        Passed to reportlab; ``False`` keeps content streams readable.
    """

    def __init__(
        self,
        *,
        page_size: tuple[float, float] = PAGE_SIZES["letter"],
        layout: PageLayoutConfig = DEFAULT_LAYOUT,
        resolver: ImageResolver | None = None,
        max_content_pages: int | None = DEFAULT_MAX_CONTENT_PAGES,
        page_compression: bool = True,
    ) -> None:
        self.page_size = page_size
        self.layout = layout
        self.resolver = resolver or ImageResolver()
        self.max_content_pages = max_content_pages
        self.page_compression = page_compression

    def select_pages(
        self,
        pages: Sequence[StoryPage],
        *,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[StoryPage]:
        """Return the pages a render with ``offset``/``limit`` would include."""
        if offset < 0:
            raise ValueError("offset must be non-negative.")
        if limit is not None and limit < 0:
            raise ValueError("limit must be non-negative.")

        bound = limit
        if self.max_content_pages is not None:
            bound = self.max_content_pages if bound is None else min(bound, self.max_content_pages)

        ordered = sorted(pages, key=lambda page: page.page_number)
        end = None if bound is None else offset + bound
        return ordered[offset:end]

    def render(
        self,
        story: Story,
        pages: Sequence[StoryPage],
        *,
        offset: int = 0,
        limit: int | None = None,
    ) -> bytes:
        """
        Render ``story`` to PDF bytes.

        The cover page is only drawn for the first batch (``offset == 0``).
        """
        selected = self.select_pages(pages, offset=offset, limit=limit)
        buffer = BytesIO()
        pdf = canvas.Canvas(
            buffer,
            pagesize=self.page_size,
            pageCompression=1 if self.page_compression else 0,
        )
        pdf.setTitle(story.title)
        pdf.setAuthor("storybook")

        if offset == 0:
            self._draw_cover_page(pdf, story)

        for page in selected:
            self._draw_story_page(pdf, page)

        if offset != 0 and not selected:
            # Keep at least one page in the document.
            pdf.showPage()

        pdf.save()
        logger.info(
            "Rendered story %s: %d content page(s), offset %d", story.id, len(selected), offset
        )
        return buffer.getvalue()

    def build(
        self,
        story: Story,
        pages: Sequence[StoryPage],
        output_path: Path | str,
        *,
        offset: int = 0,
        limit: int | None = None,
    ) -> Path:
        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        output_file.write_bytes(self.render(story, pages, offset=offset, limit=limit))
        return output_file

    def build_from_bundle(self, bundle: StoryBundle, output_path: Path | str) -> Path:
        return self.build(bundle.story, bundle.pages, output_path)

    # ------------------------------------------------------------------ cover rendering

    def _draw_cover_page(self, pdf: canvas.Canvas, story: Story) -> None:
        width, height = self.page_size
        layout = self.layout

        pdf.setFillColor(layout.cover_background)
        pdf.rect(0, 0, width, height, stroke=0, fill=1)
        pdf.setFillColor(layout.cover_text_color)

        title_lines = wrap_text(
            story.title, layout.title_font, layout.title_size, width - 2 * layout.margin
        )
        title_leading = layout.title_size * 1.2
        y = height / 2 + (len(title_lines) * title_leading) / 2

        pdf.setFont(layout.title_font, layout.title_size)
        for line in title_lines:
            pdf.drawCentredString(width / 2, y, line)
            y -= title_leading

        if story.child_name:
            pdf.setFont(layout.body_font, layout.subtitle_size)
            pdf.drawCentredString(width / 2, y - layout.subtitle_size, f"A story for {story.child_name}")

        pdf.showPage()

    # ------------------------------------------------------------------ story pages

    def _draw_story_page(self, pdf: canvas.Canvas, page: StoryPage) -> None:
        width, height = self.page_size
        layout = self.layout

        y = height - layout.margin - layout.header_size
        pdf.setFillColor(layout.text_color)
        pdf.setFont(layout.header_font, layout.header_size)
        pdf.drawString(layout.margin, y, f"Page {page.page_number}")
        y -= layout.header_size + layout.leading

        if page.has_image:
            y = self._draw_image(pdf, page, y)

        pdf.setFillColor(layout.text_color)
        pdf.setFont(layout.body_font, layout.body_size)
        for line in wrap_text(
            page.text_content, layout.body_font, layout.body_size, width - 2 * layout.margin
        ):
            if y < layout.bottom_limit:
                pdf.showPage()
                pdf.setFillColor(layout.text_color)
                pdf.setFont(layout.body_font, layout.body_size)
                y = height - layout.margin - layout.body_size
            pdf.drawString(layout.margin, y, line)
            y -= layout.leading

        pdf.showPage()

    def _draw_image(self, pdf: canvas.Canvas, page: StoryPage, y: float) -> float:
        width, _ = self.page_size
        layout = self.layout

        try:
            resolved = self.resolver.resolve(page.image_url or "")
            reader = ImageReader(BytesIO(resolved.data))
            img_width, img_height = reader.getSize()
            draw_width, draw_height = self._scaled_size(img_width, img_height)
            x = (width - draw_width) / 2
            pdf.drawImage(
                reader,
                x,
                y - draw_height,
                draw_width,
                draw_height,
                mask="auto",
            )
        except (ImageResolutionError, OSError, ValueError) as exc:
            logger.warning("Image for page %d unavailable: %s", page.page_number, exc)
            pdf.setFillColor(layout.caption_color)
            pdf.setFont(layout.body_font, layout.body_size)
            pdf.drawString(layout.margin, y, IMAGE_PLACEHOLDER)
            return y - layout.leading * 1.5

        return y - draw_height - layout.leading

    def _scaled_size(self, img_width: float, img_height: float) -> tuple[float, float]:
        width, _ = self.page_size
        max_width = width - 2 * self.layout.margin
        scale = min(
            max_width / img_width,
            self.layout.max_image_height / img_height,
            self.resolver.limits.max_upscale,
        )
        return img_width * scale, img_height * scale
