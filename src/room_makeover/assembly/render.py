from __future__ import annotations

import logging
from dataclasses import dataclass
from io import BytesIO

from PIL import Image

from room_makeover.edit_request import NormalizedRect
from room_makeover.errors import CompositingFailed

logger = logging.getLogger(__name__)

DEFAULT_CANVAS = (1024, 1024)


@dataclass(frozen=True)
class CompositeResult:
    png: bytes
    width: int
    height: int


def composite_edit(
    base_bytes: bytes,
    generated_bytes: bytes,
    strength: float,
    mask_bytes: bytes | None = None,
    insert_region: NormalizedRect | None = None,
    base_size: tuple[int, int] | None = None,
) -> CompositeResult:
    """
    Blend the generated image back onto the original photo.

    - canvas = base size, else generated size, else 1024x1024
    - base and generated are cover-fit onto the canvas
    - alpha comes from the explicit mask if given, else from a white box at the
      insert region, scaled by `strength`; with neither the generated image
      replaces the original outright

    Any raster failure is reported as CompositingFailed.
    """
    try:
        return _composite(base_bytes, generated_bytes, strength, mask_bytes, insert_region, base_size)
    except CompositingFailed:
        raise
    except Exception as exc:
        logger.exception("Compositing failed")
        raise CompositingFailed("Failed to composite the edited image.") from exc


def _composite(
    base_bytes: bytes,
    generated_bytes: bytes,
    strength: float,
    mask_bytes: bytes | None,
    insert_region: NormalizedRect | None,
    base_size: tuple[int, int] | None,
) -> CompositeResult:
    base = Image.open(BytesIO(base_bytes))
    generated = Image.open(BytesIO(generated_bytes))
    generated.load()
    size = resolve_canvas_size(base_size or base.size, generated.size)

    gen_layer = _resize_cover(generated.convert("RGBA"), size)

    alpha: Image.Image | None = None
    if mask_bytes:
        # An explicit mask wins over the insert placement box.
        mask = Image.open(BytesIO(mask_bytes)).convert("L")
        alpha = scale_alpha(_resize_cover(mask, size), strength)
    elif insert_region is not None:
        alpha = scale_alpha(placement_mask(size, insert_region), strength)

    if alpha is None:
        return CompositeResult(png=_pil_to_png_bytes(gen_layer), width=size[0], height=size[1])

    base_layer = _resize_cover(base.convert("RGBA"), size)

    layer = gen_layer.convert("RGB")
    layer.putalpha(alpha)
    out = Image.alpha_composite(base_layer, layer)
    return CompositeResult(png=_pil_to_png_bytes(out), width=size[0], height=size[1])


def resolve_canvas_size(
    base_size: tuple[int, int] | None,
    generated_size: tuple[int, int] | None,
) -> tuple[int, int]:
    for size in (base_size, generated_size):
        if size and size[0] > 0 and size[1] > 0:
            return int(size[0]), int(size[1])
    return DEFAULT_CANVAS


def placement_mask(size: tuple[int, int], region: NormalizedRect) -> Image.Image:
    """Black canvas with a solid white box at the pixel projection of `region`."""
    mask = Image.new("L", size, 0)
    left, top, width, height = region.to_pixels(size)
    if width > 0 and height > 0:
        mask.paste(255, (left, top, min(size[0], left + width), min(size[1], top + height)))
    return mask


def scale_alpha(mask: Image.Image, strength: float) -> Image.Image:
    # alpha = pixel * strength + 0
    lut = [min(255, int(round(v * strength))) for v in range(256)]
    return mask.convert("L").point(lut)


def _resize_cover(img: Image.Image, size: tuple[int, int]) -> Image.Image:
    """
    Resize to cover the target canvas (no stretching), then center-crop.
    """
    tw, th = size
    iw, ih = img.size
    if (iw, ih) == (tw, th):
        return img.copy()
    if iw <= 0 or ih <= 0:
        return img.resize(size, Image.Resampling.LANCZOS)

    scale = max(tw / iw, th / ih)
    nw, nh = max(tw, int(round(iw * scale))), max(th, int(round(ih * scale)))
    resized = img.resize((nw, nh), Image.Resampling.LANCZOS)

    left = (nw - tw) // 2
    top = (nh - th) // 2
    return resized.crop((left, top, left + tw, top + th))


def _pil_to_png_bytes(img: Image.Image) -> bytes:
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
