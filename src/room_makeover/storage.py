from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import httpx

from room_makeover.config import Settings
from room_makeover.edit_request import EditRequest

logger = logging.getLogger(__name__)

VERCEL_BLOB_API_VERSION = "7"
ARTIFACT_KEYS = ("input", "mask", "output", "metadata")
_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp", "image/avif": "avif"}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _extension_for(content_type: str) -> str:
    return _EXTENSIONS.get(content_type, "bin")


@dataclass(frozen=True)
class StoredBlob:
    pathname: str
    url: str
    download_url: str
    content_type: str

    def as_json(self) -> dict[str, str]:
        return {
            "pathname": self.pathname,
            "url": self.url,
            "downloadUrl": self.download_url,
            "contentType": self.content_type,
        }


class BlobStore(Protocol):
    name: str

    async def upload(self, pathname: str, data: bytes, content_type: str) -> StoredBlob: ...


class VercelBlobStore:
    name = "vercel"

    def __init__(
        self,
        token: str,
        api_url: str = "https://blob.vercel-storage.com",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    async def upload(self, pathname: str, data: bytes, content_type: str) -> StoredBlob:
        headers = {
            "authorization": f"Bearer {self.token}",
            "x-api-version": VERCEL_BLOB_API_VERSION,
            "x-content-type": content_type,
            "x-add-random-suffix": "0",
        }
        url = f"{self.api_url}/{pathname}"
        if self._http_client is not None:
            resp = await self._http_client.put(url, content=data, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.put(url, content=data, headers=headers)
        resp.raise_for_status()

        body = resp.json()
        return StoredBlob(
            pathname=body.get("pathname") or pathname,
            url=body["url"],
            download_url=body.get("downloadUrl") or body["url"],
            content_type=body.get("contentType") or content_type,
        )


class LocalBlobStore:
    """
    Writes artifacts under a directory that the app serves at `public_base_url`.

    The static mount sends no attachment disposition, so `downloadUrl` is the
    plain URL.
    """

    name = "local"

    def __init__(self, root_dir: Path | str, public_base_url: str = "/blobs") -> None:
        self.root_dir = Path(root_dir).resolve()
        self.root_dir.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def abs_path(self, pathname: str) -> Path:
        path = (self.root_dir / pathname).resolve()
        if not str(path).startswith(str(self.root_dir) + os.sep):
            raise ValueError("Refusing to write outside blob root")
        return path

    async def upload(self, pathname: str, data: bytes, content_type: str) -> StoredBlob:
        path = self.abs_path(pathname)
        await asyncio.to_thread(self._write, path, data)
        url = f"{self.public_base_url}/{pathname}"
        return StoredBlob(pathname=pathname, url=url, download_url=url, content_type=content_type)

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)


def get_blob_store(settings: Settings) -> BlobStore | None:
    backend = settings.persistence_backend
    if backend == "vercel":
        return VercelBlobStore(token=settings.blob_read_write_token, api_url=settings.blob_api_url)
    if backend == "local":
        return LocalBlobStore(settings.blob_local_dir, public_base_url=settings.blob_public_base_url)
    return None


def artifact_folder(req: EditRequest, now: datetime | None = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%SZ")
    project = req.project_code or "unassigned"
    session = req.session_id or "anonymous"
    return f"edits/{project}/{session}/{stamp}-{uuid.uuid4().hex[:8]}"


def artifact_paths(req: EditRequest, folder: str) -> dict[str, str | None]:
    return {
        "input": f"{folder}/input.{_extension_for(req.base_image.content_type)}",
        "mask": f"{folder}/mask.png" if req.mask is not None else None,
        "output": f"{folder}/output.png",
        "metadata": f"{folder}/metadata.json",
    }


def build_metadata(
    req: EditRequest,
    paths: dict[str, str | None],
    canvas: tuple[int, int],
    temperature: float,
    model: str,
    generation: dict[str, Any] | None = None,
) -> dict[str, Any]:
    placement: dict[str, Any] | None = None
    if req.insert_region is not None:
        r = req.insert_region
        left, top, width, height = r.to_pixels(canvas)
        placement = {
            "normalized": {"x": r.x, "y": r.y, "width": r.width, "height": r.height},
            "pixels": {"left": left, "top": top, "width": width, "height": height},
            "canvas": {"width": canvas[0], "height": canvas[1]},
            "filename": req.insert_image.filename if req.insert_image else None,
        }

    return {
        "createdAt": _now_iso(),
        "prompt": req.prompt,
        "negativePrompt": req.negative_prompt,
        "model": model,
        "parameters": {
            "guidanceScale": req.guidance_scale,
            "strength": req.strength,
            "inferenceSteps": req.inference_steps,
            "seed": req.seed,
            "temperature": temperature,
        },
        "files": {
            "input": paths["input"],
            "mask": paths["mask"],
            "output": paths["output"],
        },
        "originalFilenames": {
            "input": req.base_image.filename,
            "mask": req.mask.filename if req.mask else None,
        },
        "contentTypes": {
            "input": req.base_image.content_type,
            "mask": req.mask.content_type if req.mask else None,
            "output": "image/png",
        },
        "insertPlacement": placement,
        "generation": generation,
        "projectCode": req.project_code,
        "sessionId": req.session_id,
    }


async def persist_artifacts(
    store: BlobStore,
    req: EditRequest,
    output_png: bytes,
    canvas: tuple[int, int],
    temperature: float,
    model: str,
    generation: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Upload input, mask, output and metadata side by side.

    Waits for every upload; a failed upload is logged and its slot is None.
    """
    folder = artifact_folder(req)
    paths = artifact_paths(req, folder)
    metadata = build_metadata(req, paths, canvas, temperature, model, generation)

    jobs: dict[str, Awaitable[StoredBlob]] = {
        "input": store.upload(paths["input"], req.base_image.data, req.base_image.content_type),
        "output": store.upload(paths["output"], output_png, "image/png"),
        "metadata": store.upload(
            paths["metadata"],
            json.dumps(metadata, indent=2).encode("utf-8"),
            "application/json",
        ),
    }
    if req.mask is not None:
        jobs["mask"] = store.upload(paths["mask"], req.mask.data, req.mask.content_type)

    outcomes = await asyncio.gather(*jobs.values(), return_exceptions=True)

    doc: dict[str, Any] = {key: None for key in ARTIFACT_KEYS}
    for key, outcome in zip(jobs, outcomes):
        if isinstance(outcome, Exception):
            logger.warning(f"Failed to persist {key} artifact to {store.name}: {outcome!r}")
            continue
        if isinstance(outcome, BaseException):
            raise outcome
        doc[key] = outcome.as_json()

    doc["details"] = {
        "projectCode": req.project_code,
        "sessionId": req.session_id,
        "folder": folder,
    }
    return doc
