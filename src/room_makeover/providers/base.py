from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol


@dataclass(frozen=True)
class TextSegment:
    text: str
    kind: Literal["text"] = field(default="text", init=False)

    def to_content_part(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ImageSegment:
    mime_type: str
    data: bytes
    kind: Literal["image"] = field(default="image", init=False)

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{base64.b64encode(self.data).decode('ascii')}"

    def to_content_part(self) -> dict[str, Any]:
        return {"type": "image_url", "image_url": {"url": self.data_url()}}


PromptSegment = TextSegment | ImageSegment


@dataclass(frozen=True)
class GeneratedImage:
    data: bytes
    mime_type: str
    provider: str
    model: str
    raw_metadata: dict[str, Any]


class ImageEditProvider(Protocol):
    name: str
    model: str

    async def edit(
        self,
        segments: list[PromptSegment],
        temperature: float,
    ) -> GeneratedImage: ...
