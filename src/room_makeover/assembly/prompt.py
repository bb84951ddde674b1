from __future__ import annotations

from dataclasses import dataclass

from room_makeover.edit_request import EditRequest, clamp
from room_makeover.providers.base import ImageSegment, PromptSegment, TextSegment

MASK_NOTE = (
    "The next image is an edit mask for the room photo. "
    "White pixels mark the area to edit; black pixels must stay untouched."
)
INSERT_LABEL = "Reference object to insert:"


@dataclass(frozen=True)
class AssembledPrompt:
    segments: list[PromptSegment]
    temperature: float


def _pct(value: float) -> str:
    return f"{value * 100:.1f}"


def _instruction_text(req: EditRequest) -> str:
    lines = [req.prompt]
    if req.negative_prompt:
        lines.append(f"Avoid: {req.negative_prompt}.")
    lines.append("Preserve the room's layout and camera perspective unless asked otherwise.")
    lines.append(f"Work with the care of a {req.inference_steps}-step refinement pass.")
    lines.append(f"Apply changes with an intensity of {req.strength:.2f}.")
    lines.append("Return a single edited image of the same scene.")
    return "\n".join(lines)


def _placement_text(req: EditRequest) -> str:
    r = req.insert_region
    return (
        "Place the reference object inside the target box: "
        f"top-left {_pct(r.x)}% from left, {_pct(r.y)}% from top, "
        f"spans {_pct(r.width)}% × {_pct(r.height)}% of the image. "
        "Match the room's lighting and scale."
    )


def temperature_for(guidance_scale: float) -> float:
    return clamp(guidance_scale / 10.0, 0.0, 2.0)


def assemble_prompt(req: EditRequest) -> AssembledPrompt:
    """
    Build the ordered multimodal prompt for one edit.

    Order is fixed: instructions, base image, [mask note, mask],
    [placement, label, insert image], [seed note].
    """
    segments: list[PromptSegment] = [
        TextSegment(_instruction_text(req)),
        ImageSegment(req.base_image.content_type, req.base_image.data),
    ]

    if req.mask is not None:
        segments.append(TextSegment(MASK_NOTE))
        segments.append(ImageSegment(req.mask.content_type, req.mask.data))

    if req.insert_image is not None and req.insert_region is not None:
        segments.append(TextSegment(_placement_text(req)))
        segments.append(TextSegment(INSERT_LABEL))
        segments.append(ImageSegment(req.insert_image.content_type, req.insert_image.data))

    if req.seed is not None:
        segments.append(TextSegment(f"Use seed {req.seed} and keep the output deterministic for it."))

    return AssembledPrompt(segments=segments, temperature=temperature_for(req.guidance_scale))
