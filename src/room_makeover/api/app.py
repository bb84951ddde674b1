from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from fastapi import APIRouter, FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from room_makeover.config import Settings, settings as default_settings
from room_makeover.edit_request import EditForm, RawUpload, parse_edit_request
from room_makeover.errors import EditError, GenerationTimeout, UpstreamConfigError
from room_makeover.pipeline import run_edit
from room_makeover.providers.base import ImageEditProvider
from room_makeover.providers.openrouter_provider import OpenRouterImageProvider
from room_makeover.storage import BlobStore, LocalBlobStore, get_blob_store

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[Settings], ImageEditProvider]
T = TypeVar("T")

DISCONNECT_POLL_SECONDS = 0.5

router = APIRouter()


def _get_openrouter(settings: Settings) -> ImageEditProvider:
    if not settings.openrouter_api_key:
        raise UpstreamConfigError("OPENROUTER_API_KEY is not set on the server.")
    return OpenRouterImageProvider(
        api_key=settings.openrouter_api_key,
        model=settings.openrouter_image_model,
        base_url=settings.openrouter_base_url,
        timeout=settings.generation_timeout_seconds,
        referer=settings.openrouter_referer,
        title=settings.openrouter_title,
    )


async def _read_upload(upload: UploadFile | None) -> RawUpload | None:
    if upload is None:
        return None
    data = await upload.read()
    return RawUpload(filename=upload.filename or "", content_type=upload.content_type, data=data)


async def _run_while_connected(request: Request, coro: Awaitable[T], timeout: float) -> T:
    """
    Await `coro` under a wall-clock ceiling, cancelling it if the client goes away.

    Cancellation aborts in-flight generation and upload calls; anything already
    uploaded is left as is.
    """
    task = asyncio.ensure_future(coro)

    async def watch() -> None:
        while not task.done():
            if await request.is_disconnected():
                logger.info("Client disconnected; cancelling image edit")
                task.cancel()
                return
            await asyncio.sleep(DISCONNECT_POLL_SECONDS)

    watcher = asyncio.ensure_future(watch())
    try:
        return await asyncio.wait_for(task, timeout=timeout)
    finally:
        watcher.cancel()


@router.get("/api/health")
def health(request: Request):
    s: Settings = request.app.state.settings
    return {"status": "ok", "model": s.openrouter_image_model, "persistence": s.persistence_backend}


@router.post("/api/edit")
async def edit_image(
    request: Request,
    prompt: str | None = Form(None),
    image: UploadFile | None = File(None),
    mask: UploadFile | None = File(None),
    negative_prompt: str | None = Form(None, alias="negativePrompt"),
    guidance_scale: str | None = Form(None, alias="guidanceScale"),
    strength: str | None = Form(None),
    inference_steps: str | None = Form(None, alias="inferenceSteps"),
    seed: str | None = Form(None),
    insert_image: UploadFile | None = File(None, alias="insertImage"),
    insert_x: str | None = Form(None, alias="insertX"),
    insert_y: str | None = Form(None, alias="insertY"),
    insert_width: str | None = Form(None, alias="insertWidth"),
    insert_height: str | None = Form(None, alias="insertHeight"),
    persist_to_blob: str | None = Form(None, alias="persistToBlob"),
    project_code: str | None = Form(None, alias="projectCode"),
    session_id: str | None = Form(None, alias="sessionId"),
):
    state = request.app.state
    s: Settings = state.settings

    form = EditForm(
        prompt=prompt,
        image=await _read_upload(image),
        mask=await _read_upload(mask),
        negative_prompt=negative_prompt,
        guidance_scale=guidance_scale,
        strength=strength,
        inference_steps=inference_steps,
        seed=seed,
        insert_image=await _read_upload(insert_image),
        insert_x=insert_x,
        insert_y=insert_y,
        insert_width=insert_width,
        insert_height=insert_height,
        persist_to_blob=persist_to_blob,
        project_code=project_code,
        session_id=session_id,
    )
    # Validation finishes before any upstream call.
    req = parse_edit_request(form, s)
    provider = state.provider_factory(s)
    logger.info(
        f"Edit accepted: base={req.base_image.width}x{req.base_image.height} "
        f"mask={req.mask is not None} insert={req.insert_region is not None}"
    )

    try:
        return await _run_while_connected(
            request,
            run_edit(req, provider, state.blob_store),
            timeout=s.request_timeout_seconds,
        )
    except asyncio.TimeoutError as exc:
        raise GenerationTimeout("The image edit timed out before it could finish.") from exc
    except EditError:
        raise
    except Exception as exc:
        logger.exception("Unexpected error during image edit")
        raise EditError("Unexpected error while calling the image edit service.") from exc


async def _edit_error_handler(request: Request, exc: EditError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"Edit failed ({exc.status_code}): {exc.message}")
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse({"error": "The edit request form data is invalid."}, status_code=400)


def create_app(
    settings: Settings | None = None,
    provider_factory: ProviderFactory | None = None,
    blob_store: BlobStore | None = None,
) -> FastAPI:
    s = settings or default_settings
    app = FastAPI(title="room_makeover image edit service")

    app.state.settings = s
    app.state.provider_factory = provider_factory or _get_openrouter
    app.state.blob_store = blob_store if blob_store is not None else get_blob_store(s)

    if isinstance(app.state.blob_store, LocalBlobStore) and s.blob_public_base_url.startswith("/"):
        app.mount(
            s.blob_public_base_url,
            StaticFiles(directory=str(app.state.blob_store.root_dir)),
            name="blobs",
        )

    app.add_exception_handler(EditError, _edit_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=default_settings.log_level)
    uvicorn.run(app, host="0.0.0.0", port=8000)
