from __future__ import annotations

import base64
import json
from io import BytesIO

import httpx
import pytest
from PIL import Image

from room_makeover.config import Settings
from room_makeover.edit_request import EditRequest, ImageAsset
from room_makeover.providers.base import GeneratedImage


def make_image_bytes(size=(64, 64), color=(200, 30, 30), fmt="PNG", mode="RGB") -> bytes:
    buf = BytesIO()
    Image.new(mode, size, color).save(buf, format=fmt)
    return buf.getvalue()


def png_data_url(data: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(data).decode("ascii")


def chat_response(message: dict) -> dict:
    return {"id": "gen-test", "choices": [{"index": 0, "message": message}]}


def asset(size=(64, 64), color=(200, 30, 30), content_type="image/png", filename="room.png") -> ImageAsset:
    fmt = "JPEG" if content_type == "image/jpeg" else "PNG"
    return ImageAsset(make_image_bytes(size, color, fmt=fmt), content_type, size[0], size[1], filename)


class FakeProvider:
    name = "fake"
    model = "fake/image-model"

    def __init__(self, image_bytes: bytes | None = None) -> None:
        self.image_bytes = image_bytes or make_image_bytes(color=(20, 20, 220))
        self.calls: list[tuple[list, float]] = []

    async def edit(self, segments, temperature):
        self.calls.append((segments, temperature))
        return GeneratedImage(
            data=self.image_bytes,
            mime_type="image/png",
            provider=self.name,
            model=self.model,
            raw_metadata={},
        )


class RecordingHandler:
    """httpx.MockTransport handler that replays one canned response."""

    def __init__(self, status_code=200, payload=None, text=None) -> None:
        self.status_code = status_code
        self.payload = payload
        self.text = text
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.text is not None:
            return httpx.Response(self.status_code, text=self.text)
        return httpx.Response(self.status_code, json=self.payload)

    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        openrouter_api_key="test-key",
        openrouter_base_url="https://openrouter.test/api/v1",
        blob_read_write_token=None,
        blob_local_dir=None,
    )


@pytest.fixture
def edit_request() -> EditRequest:
    return EditRequest(prompt="make the walls sage green", base_image=asset())
