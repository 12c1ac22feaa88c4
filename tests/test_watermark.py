from __future__ import annotations

import io

import pytest
from PIL import Image

from portraitist.services.watermark import WatermarkError, apply_watermark


def _jpeg(size: tuple[int, int], color: tuple[int, int, int] = (20, 40, 80)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="JPEG")
    return buf.getvalue()


def test_watermark_returns_png_of_same_size() -> None:
    out = apply_watermark(_jpeg((640, 360)))
    with Image.open(io.BytesIO(out)) as im:
        assert im.format == "PNG"
        assert im.size == (640, 360)
        assert im.mode == "RGBA"


def test_watermark_changes_pixels_but_stays_translucent() -> None:
    color = (20, 40, 80)
    src = _jpeg((400, 400), color)
    with Image.open(io.BytesIO(src)) as im:
        before = im.convert("RGBA").getcolors(maxcolors=1 << 16) or []

    out = apply_watermark(src, text="AI Generator", opacity=0.3)
    with Image.open(io.BytesIO(out)) as im:
        colors = im.getcolors(maxcolors=1 << 20) or []
        assert len(colors) > len(before)
        # No fully white pixel survives a 30% overlay on a dark background.
        assert all(rgba[:3] != (255, 255, 255) for _count, rgba in colors)


def test_zero_opacity_leaves_image_unchanged() -> None:
    src = _jpeg((200, 100))
    out = apply_watermark(src, opacity=0.0)
    with Image.open(io.BytesIO(src)) as a, Image.open(io.BytesIO(out)) as b:
        assert list(a.convert("RGBA").getdata()) == list(b.getdata())


def test_undecodable_input_raises() -> None:
    with pytest.raises(WatermarkError):
        _ = apply_watermark(b"not an image")
