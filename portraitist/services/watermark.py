from __future__ import annotations

from io import BytesIO
import logging

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError


logger = logging.getLogger(__name__)

TILE_WIDTH = 400
TILE_HEIGHT = 200
# Counter-clockwise in PIL terms, i.e. text rising to the right.
ROTATION_DEGREES = 30
FONT_WIDTH_DIVISOR = 18

_FONT_CANDIDATES = ("DejaVuSans-Bold.ttf", "DejaVuSans.ttf", "Arial.ttf")


class WatermarkError(ValueError):
    pass


def _load_font(size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    for name in _FONT_CANDIDATES:
        try:
            return ImageFont.truetype(name, size)
        except OSError:
            continue
    try:
        return ImageFont.load_default(size=size)
    except TypeError:
        # Pillow built without FreeType ignores sizing.
        return ImageFont.load_default()


def _tile(text: str, font: ImageFont.FreeTypeFont | ImageFont.ImageFont, alpha: int) -> Image.Image:
    measure = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
    left, top, right, bottom = measure.textbbox((0, 0), text, font=font)
    text_w, text_h = right - left, bottom - top

    tile_w = max(TILE_WIDTH, text_w + text_h)
    tile_h = max(TILE_HEIGHT, text_h * 3)
    tile = Image.new("RGBA", (tile_w, tile_h), (0, 0, 0, 0))
    draw = ImageDraw.Draw(tile)
    origin = ((tile_w - text_w) // 2 - left, (tile_h - text_h) // 2 - top)
    draw.text(origin, text, font=font, fill=(255, 255, 255, alpha))
    return tile


def apply_watermark(image_bytes: bytes, *, text: str = "AI Generator", opacity: float = 0.3) -> bytes:
    """Composite a tiled, rotated, semi-transparent text watermark; return PNG bytes.

    Font size follows the image width (``width // 18``) so the mark scales with
    the picture. The source buffer is decoded fully before anything is written.
    """
    try:
        with Image.open(BytesIO(image_bytes)) as src:
            src.load()
            base = src.convert("RGBA")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise WatermarkError(f"cannot decode image: {type(exc).__name__}") from exc

    width, height = base.size
    font = _load_font(max(12, width // FONT_WIDTH_DIVISOR))
    alpha = max(0, min(255, round(255 * opacity)))
    tile = _tile(text, font, alpha)

    # Cover the rotated frame with a square sized to the image diagonal.
    side = int((width**2 + height**2) ** 0.5) + max(tile.size)
    layer = Image.new("RGBA", (side, side), (0, 0, 0, 0))
    for y in range(0, side, tile.height):
        for x in range(0, side, tile.width):
            layer.paste(tile, (x, y), tile)
    layer = layer.rotate(ROTATION_DEGREES, resample=Image.Resampling.BICUBIC)

    left = (side - width) // 2
    top = (side - height) // 2
    overlay = layer.crop((left, top, left + width, top + height))

    out = Image.alpha_composite(base, overlay)
    buf = BytesIO()
    out.save(buf, format="PNG", optimize=True)
    logger.debug("watermark applied size=%sx%s font_size=%s", width, height, width // FONT_WIDTH_DIVISOR)
    return buf.getvalue()
