from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from collections.abc import Callable
from typing import Any, TypeVar

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI
from pydantic import BaseModel, ConfigDict, ValidationError

from room_makeover.errors import GenerationTimeout, MalformedImagePayload, NoImageReturned, UpstreamRequestFailed
from room_makeover.providers.base import GeneratedImage, PromptSegment

logger = logging.getLogger(__name__)

ERROR_EXCERPT_CHARS = 160
OUTPUT_IMAGE_TYPES = frozenset({"output_image", "image"})

_DATA_URL_RE = re.compile(
    r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)(?:;[\w.+-]+=[\w.+-]+)*;base64,(?P<payload>.*)$",
    re.DOTALL | re.IGNORECASE,
)


# Response model: images may sit in `images[]` or in `content`. Each choice,
# image entry and content part is validated on its own and skipped when it
# does not fit, so one odd sibling never hides a usable image.
class _Loose(BaseModel):
    model_config = ConfigDict(extra="allow")


class ImageUrl(_Loose):
    url: str | None = None


class ContentPart(_Loose):
    type: str | None = None
    image_url: ImageUrl | str | None = None
    b64_json: str | None = None
    mime_type: str | None = None


class ImageEntry(_Loose):
    type: str | None = None
    image_url: ImageUrl | str | None = None


class Message(_Loose):
    images: Any = None
    content: Any = None


class Choice(_Loose):
    message: Message | None = None


M = TypeVar("M", bound=BaseModel)


def _parse(model: type[M], value: Any) -> M | None:
    try:
        return model.model_validate(value)
    except ValidationError:
        return None


def _url_of(value: ImageUrl | str | None) -> str | None:
    if isinstance(value, ImageUrl):
        return value.url or None
    return value or None


def _from_part(part: ContentPart) -> str | None:
    if part.type == "image_url":
        return _url_of(part.image_url)
    if part.type in OUTPUT_IMAGE_TYPES and part.b64_json:
        return f"data:{part.mime_type or 'image/png'};base64,{part.b64_json}"
    return None


def _from_images(message: Message) -> str | None:
    if not isinstance(message.images, list):
        return None
    for raw in message.images:
        entry = _parse(ImageEntry, raw)
        if entry is None:
            continue
        url = _url_of(entry.image_url)
        if url:
            return url
    return None


def _from_content_list(message: Message) -> str | None:
    if not isinstance(message.content, list):
        return None
    for raw in message.content:
        if not isinstance(raw, dict):
            continue
        part = _parse(ContentPart, raw)
        if part is None:
            continue
        url = _from_part(part)
        if url:
            return url
    return None


def _from_content_object(message: Message) -> str | None:
    if not isinstance(message.content, dict):
        return None
    part = _parse(ContentPart, message.content)
    return _from_part(part) if part is not None else None


IMAGE_EXTRACTORS: tuple[Callable[[Message], str | None], ...] = (
    _from_images,
    _from_content_list,
    _from_content_object,
)


def extract_image_ref(payload: Any) -> str:
    """Return the first image reference found across all choices."""
    choices = payload.get("choices") if isinstance(payload, dict) else None
    if not isinstance(choices, list):
        raise NoImageReturned("The image model returned an unexpected response with no image.")

    for raw in choices:
        choice = _parse(Choice, raw)
        if choice is None or choice.message is None:
            continue
        for extractor in IMAGE_EXTRACTORS:
            ref = extractor(choice.message)
            if ref:
                return ref
    raise NoImageReturned("The image model returned no image for this edit.")


def decode_image_ref(ref: str) -> tuple[bytes, str]:
    """
    Decode a `data:<mime>;base64,...` URL, or bare base64 which is assumed to be PNG.
    """
    ref = ref.strip()
    if ref[:5].lower() == "data:":
        m = _DATA_URL_RE.match(ref)
        if not m:
            raise MalformedImagePayload("The image model returned a malformed image data URL.")
        mime, payload = m.group("mime").lower(), m.group("payload")
    else:
        mime, payload = "image/png", ref

    try:
        data = base64.b64decode("".join(payload.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedImagePayload("The image model returned image data that is not valid base64.") from exc
    if not data:
        raise MalformedImagePayload("The image model returned an empty image payload.")
    return data, mime


def upstream_error_message(status_code: int, raw_text: str) -> str:
    body: Any = None
    if raw_text:
        try:
            body = json.loads(raw_text)
        except ValueError:
            body = None

    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str) and err["message"].strip():
            return err["message"].strip()
        if isinstance(err, str) and err.strip():
            return err.strip()
        msg = body.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()

    excerpt = raw_text.strip()[:ERROR_EXCERPT_CHARS]
    if excerpt:
        return excerpt
    return f"Image edit failed with status {status_code}"


class OpenRouterImageProvider:
    name = "openrouter"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str,
        timeout: float,
        referer: str | None = None,
        title: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        headers: dict[str, str] = {}
        if referer:
            headers["HTTP-Referer"] = referer
        if title:
            headers["X-Title"] = title

        self.model = model
        # One attempt per request; callers retry.
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
            default_headers=headers or None,
            http_client=http_client,
        )

    async def edit(self, segments: list[PromptSegment], temperature: float) -> GeneratedImage:
        content = [seg.to_content_part() for seg in segments]
        try:
            raw = await self.client.chat.completions.with_raw_response.create(
                model=self.model,
                messages=[{"role": "user", "content": content}],
                modalities=["image", "text"],
                temperature=temperature,
            )
        except APITimeoutError as exc:
            raise GenerationTimeout("The image model did not respond in time.") from exc
        except APIStatusError as exc:
            status = exc.status_code
            message = upstream_error_message(status, exc.response.text)
            logger.warning(f"Image model returned {status}: {message}")
            raise UpstreamRequestFailed(message, status_code=status) from exc
        except APIConnectionError as exc:
            raise UpstreamRequestFailed("Could not reach the image model.", status_code=502) from exc

        try:
            payload = raw.http_response.json()
        except ValueError as exc:
            raise NoImageReturned("The image model returned an unexpected response with no image.") from exc

        ref = extract_image_ref(payload)
        data, mime = decode_image_ref(ref)
        meta: dict[str, Any] = {}
        if isinstance(payload, dict):
            meta = {"id": payload.get("id"), "usage": payload.get("usage")}
        return GeneratedImage(data=data, mime_type=mime, provider=self.name, model=self.model, raw_metadata=meta)
