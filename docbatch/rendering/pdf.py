"""Plain-text to PDF rendering with Pillow."""

from typing import List

from PIL import Image, ImageDraw, ImageFont

# A4 at 150 dpi
PAGE_SIZE = (1240, 1754)
MARGIN = 110
FONT_SIZE = 26
LINE_SPACING = 1.4
RESOLUTION = 150.0


def render_text_pdf(text: str, path: str, font_size: int = FONT_SIZE) -> int:
    """Lay ``text`` out on A4 pages and save them as one PDF. Returns page count."""
    font = _get_font(font_size)
    measure = ImageDraw.Draw(Image.new("RGB", (1, 1)))
    max_width = PAGE_SIZE[0] - 2 * MARGIN
    lines = _wrap(text, measure, font, max_width)

    line_height = int(font_size * LINE_SPACING)
    per_page = max(1, (PAGE_SIZE[1] - 2 * MARGIN) // line_height)
    pages: List[Image.Image] = []
    for start in range(0, max(len(lines), 1), per_page):
        page = Image.new("RGB", PAGE_SIZE, (255, 255, 255))
        draw = ImageDraw.Draw(page)
        y = MARGIN
        for line in lines[start:start + per_page]:
            draw.text((MARGIN, y), line, fill=(0, 0, 0), font=font)
            y += line_height
        pages.append(page)

    pages[0].save(
        path,
        "PDF",
        resolution=RESOLUTION,
        save_all=True,
        append_images=pages[1:],
    )
    return len(pages)


def _wrap(text: str, draw: ImageDraw.ImageDraw, font, max_width: int) -> List[str]:
    """Greedy word wrap by rendered pixel width; keeps explicit line breaks."""
    lines: List[str] = []
    for paragraph in text.splitlines() or [""]:
        words = paragraph.split(" ")
        current = ""
        for word in words:
            candidate = word if not current else f"{current} {word}"
            if draw.textlength(candidate, font=font) <= max_width or not current:
                current = candidate
            else:
                lines.append(current)
                current = word
        lines.append(current)
    return lines


def _get_font(size: int):
    """Try to load a TrueType font, falling back to Pillow's built-in font."""
    for candidate in ("DejaVuSans.ttf", "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf", "arial.ttf"):
        try:
            return ImageFont.truetype(candidate, size)
        except OSError:
            continue
    return ImageFont.load_default()
