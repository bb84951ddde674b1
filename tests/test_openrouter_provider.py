import asyncio
import base64

import httpx
import pytest

from conftest import RecordingHandler, chat_response, make_image_bytes, png_data_url
from room_makeover.errors import GenerationTimeout, MalformedImagePayload, NoImageReturned, UpstreamRequestFailed
from room_makeover.providers.base import ImageSegment, TextSegment
from room_makeover.providers.openrouter_provider import (
    OpenRouterImageProvider,
    decode_image_ref,
    extract_image_ref,
    upstream_error_message,
)

PNG = make_image_bytes(color=(10, 200, 10))


def _provider(handler) -> OpenRouterImageProvider:
    return OpenRouterImageProvider(
        api_key="test-key",
        model="google/gemini-2.5-flash-image-preview",
        base_url="https://openrouter.test/api/v1",
        timeout=5.0,
        referer="https://makeover.example",
        title="Room Makeover",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def _segments():
    return [TextSegment("paint the walls"), ImageSegment("image/png", PNG)]


def test_extracts_from_images_array_first():
    payload = chat_response(
        {
            "images": [{"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}}],
            "content": [{"type": "image_url", "image_url": {"url": "data:image/png;base64,BBBB"}}],
        }
    )
    assert extract_image_ref(payload) == "data:image/png;base64,AAAA"


def test_extracts_from_content_list():
    payload = chat_response(
        {
            "content": [
                {"type": "text", "text": "Here you go"},
                {"type": "image_url", "image_url": {"url": "data:image/webp;base64,CCCC"}},
            ]
        }
    )
    assert extract_image_ref(payload) == "data:image/webp;base64,CCCC"


def test_extracts_inline_base64_output_image():
    payload = chat_response({"content": [{"type": "output_image", "b64_json": "DDDD"}]})
    assert extract_image_ref(payload) == "data:image/png;base64,DDDD"


def test_extracts_from_single_content_object():
    payload = chat_response({"content": {"type": "image_url", "image_url": {"url": "EEEE"}}})
    assert extract_image_ref(payload) == "EEEE"


def test_later_choice_can_supply_the_image():
    payload = {
        "choices": [
            {"message": {"content": "I cannot do that"}},
            {"message": {"images": [{"image_url": {"url": "FFFF"}}]}},
        ]
    }
    assert extract_image_ref(payload) == "FFFF"


@pytest.mark.parametrize(
    "payload",
    [
        {
            "choices": [
                {"message": {"images": [{"image_url": {"url": "GGGG"}}]}},
                {"message": {"content": 42}},
            ]
        },
        {
            "choices": [
                {"message": {"content": 42}},
                {"message": "not a message"},
                {"message": {"images": [{"image_url": {"url": "GGGG"}}]}},
            ]
        },
        chat_response({"content": [None, {"type": "image_url", "image_url": {"url": "GGGG"}}]}),
        chat_response({"images": [{"image_url": ["x"]}, {"image_url": {"url": "GGGG"}}]}),
        chat_response({"images": [{"image_url": {"url": "GGGG"}}], "content": [None]}),
    ],
)
def test_malformed_siblings_do_not_hide_an_image(payload):
    assert extract_image_ref(payload) == "GGGG"


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"choices": []},
        chat_response({"content": "only text"}),
        chat_response({"content": [{"type": "text", "text": "nope"}], "images": []}),
        ["not", "an", "object"],
        {"choices": "nope"},
        {"choices": [{"message": {"content": 42}}, None]},
    ],
)
def test_missing_image_raises(payload):
    with pytest.raises(NoImageReturned) as exc:
        extract_image_ref(payload)
    assert exc.value.status_code == 502


def test_decode_data_url_and_bare_base64():
    encoded = base64.b64encode(PNG).decode("ascii")
    assert decode_image_ref(f"data:image/webp;base64,{encoded}") == (PNG, "image/webp")
    assert decode_image_ref(encoded) == (PNG, "image/png")


@pytest.mark.parametrize("ref", ["data:image/png,rawdata", "data:;base64,AAAA", "data:image/png;base64,", "not base64 !!"])
def test_decode_rejects_malformed_refs(ref):
    with pytest.raises(MalformedImagePayload):
        decode_image_ref(ref)


def test_upstream_error_message_fallbacks():
    assert upstream_error_message(400, '{"error": {"message": "Bad prompt"}}') == "Bad prompt"
    assert upstream_error_message(400, '{"error": "quota"}') == "quota"
    assert upstream_error_message(400, '{"message": "nope"}') == "nope"
    assert upstream_error_message(503, "x" * 500) == "x" * 160
    assert upstream_error_message(503, "") == "Image edit failed with status 503"


def test_edit_sends_single_user_message_and_returns_image():
    handler = RecordingHandler(payload=chat_response({"images": [{"image_url": {"url": png_data_url(PNG)}}]}))
    result = asyncio.run(_provider(handler).edit(_segments(), temperature=0.75))

    assert result.data == PNG
    assert result.mime_type == "image/png"
    assert result.model == "google/gemini-2.5-flash-image-preview"
    assert result.raw_metadata["id"] == "gen-test"

    [request] = handler.requests
    assert request.url.path == "/api/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer test-key"
    assert request.headers["x-title"] == "Room Makeover"
    body = handler.bodies()[0]
    assert body["model"] == "google/gemini-2.5-flash-image-preview"
    assert body["modalities"] == ["image", "text"]
    assert body["temperature"] == 0.75
    [message] = body["messages"]
    assert message["role"] == "user"
    assert [part["type"] for part in message["content"]] == ["text", "image_url"]


def test_non_2xx_surfaces_upstream_status_without_retry():
    handler = RecordingHandler(status_code=429, payload={"error": {"message": "Rate limit exceeded"}})
    with pytest.raises(UpstreamRequestFailed) as exc:
        asyncio.run(_provider(handler).edit(_segments(), temperature=0.5))
    assert exc.value.status_code == 429
    assert exc.value.message == "Rate limit exceeded"
    assert len(handler.requests) == 1


def test_non_json_success_is_no_image():
    handler = RecordingHandler(text="<html>gateway</html>")
    with pytest.raises(NoImageReturned):
        asyncio.run(_provider(handler).edit(_segments(), temperature=0.5))


def test_timeout_maps_to_generation_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(GenerationTimeout) as exc:
        asyncio.run(_provider(handler).edit(_segments(), temperature=0.5))
    assert exc.value.status_code == 504
