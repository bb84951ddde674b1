import pytest

from conftest import asset
from room_makeover.assembly.prompt import INSERT_LABEL, MASK_NOTE, assemble_prompt, temperature_for
from room_makeover.edit_request import EditRequest, NormalizedRect
from room_makeover.providers.base import ImageSegment, TextSegment


def _full_request() -> EditRequest:
    return EditRequest(
        prompt="add a walnut sideboard",
        negative_prompt="plastic",
        base_image=asset(content_type="image/jpeg", filename="room.jpg"),
        mask=asset(color=(255, 255, 255), filename="mask.png"),
        insert_image=asset(color=(90, 60, 30), filename="sideboard.png"),
        insert_region=NormalizedRect(x=0.1, y=0.55, width=0.4, height=0.25),
        guidance_scale=7.5,
        strength=0.35,
        inference_steps=35,
        seed=42,
    )


def test_segment_order_with_mask_insert_and_seed():
    req = _full_request()
    segments = assemble_prompt(req).segments

    assert [s.kind for s in segments] == ["text", "image", "text", "image", "text", "text", "image", "text"]
    assert segments[1].data == req.base_image.data
    assert segments[1].mime_type == "image/jpeg"
    assert segments[2].text == MASK_NOTE
    assert segments[3].data == req.mask.data
    assert "10.0% from left" in segments[4].text
    assert "55.0% from top" in segments[4].text
    assert "40.0% × 25.0%" in segments[4].text
    assert segments[5].text == INSERT_LABEL
    assert segments[6].data == req.insert_image.data
    assert "seed 42" in segments[7].text


def test_instruction_text_contents():
    text = assemble_prompt(_full_request()).segments[0].text
    lines = text.splitlines()
    assert lines[0] == "add a walnut sideboard"
    assert lines[1] == "Avoid: plastic."
    assert "35-step" in text
    assert "Apply changes with an intensity of 0.35." in text


def test_plain_request_has_instructions_and_base_only(edit_request):
    assembled = assemble_prompt(edit_request)
    assert [type(s) for s in assembled.segments] == [TextSegment, ImageSegment]
    assert "Avoid:" not in assembled.segments[0].text


def test_insert_without_region_is_skipped(edit_request):
    req = EditRequest(prompt=edit_request.prompt, base_image=edit_request.base_image, insert_image=asset())
    assert len(assemble_prompt(req).segments) == 2


def test_assembly_is_deterministic():
    first = assemble_prompt(_full_request())
    second = assemble_prompt(_full_request())
    assert first == second
    assert [s.to_content_part() for s in first.segments] == [s.to_content_part() for s in second.segments]


@pytest.mark.parametrize(
    "guidance, expected",
    [(1.0, 0.1), (7.5, 0.75), (20.0, 2.0), (35.0, 2.0), (-4.0, 0.0)],
)
def test_temperature_from_guidance(guidance, expected):
    assert temperature_for(guidance) == pytest.approx(expected)


def test_image_segment_wire_shape():
    part = ImageSegment("image/png", b"\x89PNG").to_content_part()
    assert part == {"type": "image_url", "image_url": {"url": "data:image/png;base64,iVBORw=="}}
    assert TextSegment("hi").to_content_part() == {"type": "text", "text": "hi"}
