from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from io import BytesIO

from PIL import Image, UnidentifiedImageError

from room_makeover.config import MIB, Settings
from room_makeover.errors import MissingField, PayloadTooLarge, UnreadableImage, UnsupportedMediaType

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = frozenset({"image/png", "image/jpeg", "image/webp", "image/avif"})
MASK_CONTENT_TYPE = "image/png"
_CONTENT_TYPE_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg", "image/x-png": "image/png"}

GUIDANCE_RANGE = (1.0, 20.0)
STRENGTH_RANGE = (0.1, 0.9)
STEPS_RANGE = (10, 60)

# Workspace defaults, used when a numeric field is missing or unparseable.
DEFAULT_GUIDANCE_SCALE = 7.5
DEFAULT_STRENGTH = 0.35
DEFAULT_INFERENCE_STEPS = 35


@dataclass(frozen=True)
class RawUpload:
    filename: str
    content_type: str | None
    data: bytes


@dataclass(frozen=True)
class EditForm:
    """Raw multipart fields of one `POST /api/edit` call, before validation."""

    prompt: str | None = None
    image: RawUpload | None = None
    mask: RawUpload | None = None
    negative_prompt: str | None = None
    guidance_scale: str | None = None
    strength: str | None = None
    inference_steps: str | None = None
    seed: str | None = None
    insert_image: RawUpload | None = None
    insert_x: str | None = None
    insert_y: str | None = None
    insert_width: str | None = None
    insert_height: str | None = None
    persist_to_blob: str | None = None
    project_code: str | None = None
    session_id: str | None = None


@dataclass(frozen=True)
class ImageAsset:
    data: bytes
    content_type: str
    width: int
    height: int
    filename: str = "upload.png"


@dataclass(frozen=True)
class NormalizedRect:
    x: float
    y: float
    width: float
    height: float

    def to_pixels(self, size: tuple[int, int]) -> tuple[int, int, int, int]:
        cw, ch = size
        return (
            int(round(self.x * cw)),
            int(round(self.y * ch)),
            int(round(self.width * cw)),
            int(round(self.height * ch)),
        )


@dataclass(frozen=True)
class EditRequest:
    prompt: str
    base_image: ImageAsset
    negative_prompt: str | None = None
    mask: ImageAsset | None = None
    insert_image: ImageAsset | None = None
    insert_region: NormalizedRect | None = None
    guidance_scale: float = DEFAULT_GUIDANCE_SCALE
    strength: float = DEFAULT_STRENGTH
    inference_steps: int = DEFAULT_INFERENCE_STEPS
    seed: int | None = None
    persist: bool = True
    project_code: str | None = None
    session_id: str | None = None


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _parse_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(parsed):
        return default
    return parsed


def _parse_optional_float(value: str | None) -> float | None:
    if value is None or not str(value).strip():
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_seed(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip())
    except (TypeError, ValueError):
        return None


def _clean_text(value: str | None) -> str | None:
    cleaned = (value or "").strip()
    return cleaned or None


def _safe_segment(value: str | None, max_len: int = 64) -> str | None:
    # Used as a blob path segment, so keep it to a conservative charset.
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "-", (value or "").strip())[:max_len].strip("-.")
    return cleaned or None


def clamp_guidance_scale(value: str | None) -> float:
    return clamp(_parse_float(value, DEFAULT_GUIDANCE_SCALE), *GUIDANCE_RANGE)


def clamp_strength(value: str | None) -> float:
    return clamp(_parse_float(value, DEFAULT_STRENGTH), *STRENGTH_RANGE)


def clamp_inference_steps(value: str | None) -> int:
    steps = _parse_float(value, DEFAULT_INFERENCE_STEPS)
    return int(round(clamp(steps, *STEPS_RANGE)))


def normalize_region(
    x: float | None,
    y: float | None,
    width: float | None,
    height: float | None,
) -> NormalizedRect | None:
    """
    Turn raw insert-placement fractions into a rectangle that stays on the canvas.

    Returns None (insert disabled) when any value is missing or non-finite, or
    when the box has no area. x/y are never shifted; width/height shrink instead.
    """
    values = (x, y, width, height)
    if any(v is None or not math.isfinite(v) for v in values):
        return None
    if width <= 0 or height <= 0:
        return None

    nx = clamp(x, 0.0, 1.0)
    ny = clamp(y, 0.0, 1.0)
    nw = min(clamp(width, 0.0, 1.0), 1.0 - nx)
    nh = min(clamp(height, 0.0, 1.0), 1.0 - ny)
    if nw <= 0 or nh <= 0:
        return None
    return NormalizedRect(x=nx, y=ny, width=nw, height=nh)


def _normalize_content_type(value: str | None) -> str:
    ct = (value or "").split(";", 1)[0].strip().lower()
    return _CONTENT_TYPE_ALIASES.get(ct, ct)


def probe_image(data: bytes, label: str, settings: Settings) -> tuple[int, int]:
    """
    Read only the image header and enforce the pixel ceilings.

    `Image.open` is lazy, so nothing is decompressed before the size check.
    """
    try:
        with Image.open(BytesIO(data)) as img:
            width, height = img.size
    except Image.DecompressionBombError as exc:
        raise UnreadableImage(f"{label} exceeds the maximum pixel count.", status_code=413) from exc
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise UnreadableImage(f"{label} could not be read as an image.") from exc

    if width <= 0 or height <= 0:
        raise UnreadableImage(f"{label} could not be read as an image.")
    if width > settings.max_image_side or height > settings.max_image_side:
        raise UnreadableImage(
            f"{label} exceeds the {settings.max_image_side}px per-side limit.",
            status_code=413,
        )
    if width * height > settings.max_image_pixels:
        raise UnreadableImage(f"{label} exceeds the maximum pixel count.", status_code=413)
    return width, height


def _check_size(upload: RawUpload, label: str, max_bytes: int) -> None:
    if len(upload.data) > max_bytes:
        raise PayloadTooLarge(f"{label} exceeds the {max_bytes // MIB}MB upload limit.")


def _base_image_asset(upload: RawUpload, settings: Settings) -> ImageAsset:
    _check_size(upload, "Base image", settings.max_base_image_bytes)
    content_type = _normalize_content_type(upload.content_type)
    if content_type not in ALLOWED_IMAGE_TYPES:
        content_type = "image/png"
    width, height = probe_image(upload.data, "Base image", settings)
    return ImageAsset(upload.data, content_type, width, height, upload.filename or "input.png")


def _mask_asset(upload: RawUpload, settings: Settings) -> ImageAsset:
    _check_size(upload, "Mask", settings.max_mask_bytes)
    content_type = _normalize_content_type(upload.content_type)
    if content_type != MASK_CONTENT_TYPE:
        raise UnsupportedMediaType("Mask must be uploaded as a PNG image.")
    width, height = probe_image(upload.data, "Mask", settings)
    return ImageAsset(upload.data, content_type, width, height, upload.filename or "mask.png")


def _insert_image_asset(upload: RawUpload, settings: Settings) -> ImageAsset:
    _check_size(upload, "Insert image", settings.max_insert_image_bytes)
    content_type = _normalize_content_type(upload.content_type)
    if not content_type:
        content_type = "image/png"
    if content_type not in ALLOWED_IMAGE_TYPES:
        raise UnsupportedMediaType("Insert image must be a PNG, JPEG, WEBP or AVIF file.")
    width, height = probe_image(upload.data, "Insert image", settings)
    return ImageAsset(upload.data, content_type, width, height, upload.filename or "insert.png")


def _present(upload: RawUpload | None) -> bool:
    return upload is not None and len(upload.data) > 0


def parse_edit_request(form: EditForm, settings: Settings) -> EditRequest:
    prompt = _clean_text(form.prompt)
    if not prompt:
        raise MissingField("Prompt is required to describe the desired edit.")
    if not _present(form.image):
        raise MissingField("Image file is required under the `image` field.")

    base_image = _base_image_asset(form.image, settings)
    mask = _mask_asset(form.mask, settings) if _present(form.mask) else None

    insert_image: ImageAsset | None = None
    insert_region: NormalizedRect | None = None
    if _present(form.insert_image):
        insert_image = _insert_image_asset(form.insert_image, settings)
        insert_region = normalize_region(
            _parse_optional_float(form.insert_x),
            _parse_optional_float(form.insert_y),
            _parse_optional_float(form.insert_width),
            _parse_optional_float(form.insert_height),
        )
        if insert_region is None:
            logger.info("Insert placement missing or invalid; continuing as a plain edit")
            insert_image = None

    return EditRequest(
        prompt=prompt,
        base_image=base_image,
        negative_prompt=_clean_text(form.negative_prompt),
        mask=mask,
        insert_image=insert_image,
        insert_region=insert_region,
        guidance_scale=clamp_guidance_scale(form.guidance_scale),
        strength=clamp_strength(form.strength),
        inference_steps=clamp_inference_steps(form.inference_steps),
        seed=_parse_seed(form.seed),
        persist=_parse_bool(form.persist_to_blob, True),
        project_code=_safe_segment(form.project_code),
        session_id=_safe_segment(form.session_id),
    )
