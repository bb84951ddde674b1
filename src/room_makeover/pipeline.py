from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any

from room_makeover.assembly.prompt import assemble_prompt
from room_makeover.assembly.render import composite_edit
from room_makeover.edit_request import EditRequest
from room_makeover.providers.base import ImageEditProvider
from room_makeover.storage import BlobStore, persist_artifacts

logger = logging.getLogger(__name__)


def png_data_url(png: bytes) -> str:
    return f"data:image/png;base64,{base64.b64encode(png).decode('ascii')}"


async def run_edit(
    req: EditRequest,
    provider: ImageEditProvider,
    store: BlobStore | None,
) -> dict[str, Any]:
    """
    Assemble the prompt, call the image model, composite, then persist.

    Returns the `/api/edit` response body.
    """
    assembled = assemble_prompt(req)
    logger.info(
        f"Requesting edit from {provider.name}/{provider.model}: "
        f"{len(assembled.segments)} segments, temperature={assembled.temperature:.2f}"
    )
    generated = await provider.edit(assembled.segments, assembled.temperature)

    result = await asyncio.to_thread(
        composite_edit,
        req.base_image.data,
        generated.data,
        req.strength,
        mask_bytes=req.mask.data if req.mask else None,
        insert_region=req.insert_region,
        base_size=(req.base_image.width, req.base_image.height),
    )
    logger.info(f"Composited {result.width}x{result.height} output ({len(result.png)} bytes)")

    blobs: dict[str, Any] | None = None
    if store is not None and req.persist:
        blobs = await persist_artifacts(
            store,
            req,
            result.png,
            canvas=(result.width, result.height),
            temperature=assembled.temperature,
            model=generated.model,
            generation={"provider": generated.provider, "mimeType": generated.mime_type, **generated.raw_metadata},
        )

    return {"image": png_data_url(result.png), "blobs": blobs}
