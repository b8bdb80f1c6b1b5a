from __future__ import annotations

import asyncio
import os
import shlex
from contextlib import asynccontextmanager, suppress
from typing import Any, Dict, Optional

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse
from starlette.background import BackgroundTask

from services.common.config import load_render_policy
from services.common.env import Env
from services.common.logging_setup import get_logger
from services.common.utils import safe_suffix
from services.render.admission import TranscodeGate
from services.render.artifacts import ROLE_AUDIO_IN, ROLE_CAPTIONS_IN, ROLE_VIDEO_IN, ArtifactStore
from services.render.delivery import DeliveryRecord, DeliveryRegistry
from services.render.errors import NotFoundError, RenderError
from services.render.executor import TranscodeExecutor
from services.render.pipeline import RenderPipeline
from services.render_api.uploads import stream_upload_to_path
from services.workers.sweeper import run_sweeper


log = get_logger("render_api")

CAPTION_SUFFIXES = (".srt", ".ass", ".ssa", ".vtt")

env = Env.load()
store = ArtifactStore(env.scratch_dir)
registry = DeliveryRegistry(store, ttl_sec=env.download_ttl_sec)
pipeline = RenderPipeline(
    store=store,
    registry=registry,
    executor=TranscodeExecutor(tail_bytes=env.output_tail_bytes),
    gate=TranscodeGate(max_active=env.max_active_transcodes, max_waiting=env.max_queued_transcodes),
    policy=load_render_policy(env),
    ffmpeg_cmd=shlex.split(env.ffmpeg_bin),
    max_upload_bytes=env.max_upload_bytes,
    timeout_sec=env.transcode_timeout_sec,
)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    store.ensure_root()
    store.purge()
    sweeper = asyncio.create_task(run_sweeper(registry, interval_sec=env.sweep_interval_sec))
    log.info("render api ready scratch=%s ttl_sec=%s", store.root, env.download_ttl_sec)
    try:
        yield
    finally:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        discarded = registry.discard_all()
        if discarded:
            log.info("shutdown discarded_deliveries=%s", discarded)


app = FastAPI(title="Vertical Render API", version="0.1.0", lifespan=lifespan)


@app.exception_handler(RenderError)
async def _render_error_handler(_request: Request, exc: RenderError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.get("/")
def root():
    return {"ok": True, "message": "Render API is running"}


@app.get("/health")
def health():
    return {"ok": True}


def _download_url(request: Request, token: str) -> str:
    if env.public_base_url:
        return f"{env.public_base_url.rstrip('/')}/download/{token}"
    return str(request.url_for("download", token=token))


def _render_response(request: Request, rec: DeliveryRecord) -> Dict[str, Any]:
    return {
        "success": True,
        "request_id": rec.request_id,
        "message": "Video rendered successfully",
        "output": {
            "size_bytes": rec.size_bytes,
            "duration_ms": rec.duration_ms,
            "download_token": rec.token,
            "download_url": _download_url(request, rec.token),
            "expires_in_sec": int(registry.ttl_sec),
        },
    }


def _unclaimed_render_done(request_id: str):
    def _done(task: asyncio.Future[DeliveryRecord]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning("render_unclaimed request_id=%s error=%s", request_id, exc.__class__.__name__)
        else:
            log.info("render_unclaimed request_id=%s output awaits expiry", request_id)

    return _done


@app.post("/render")
async def render(
    request: Request,
    video: Optional[UploadFile] = File(None),
    audio: Optional[UploadFile] = File(None),
    captions: Optional[UploadFile] = File(None),
):
    req = pipeline.open_request()
    parts = (
        (ROLE_VIDEO_IN, video, None),
        (ROLE_AUDIO_IN, audio, None),
        (ROLE_CAPTIONS_IN, captions, CAPTION_SUFFIXES),
    )
    role = ""
    try:
        for role, upload, suffixes in parts:
            if upload is None:
                continue
            suffix = safe_suffix(upload.filename, allowed=suffixes, fallback=".srt") if suffixes else None
            art = pipeline.allocate_input(req, role, suffix=suffix)
            size = await stream_upload_to_path(upload, art.path, max_bytes=env.max_upload_bytes, role=role)
            store.mark_ready(art)
            log.info("upload_stored request_id=%s role=%s bytes=%s", req.request_id, role, size)
    except RenderError as e:
        raise pipeline.abort(req, e)
    except Exception as e:
        log.exception("upload_failed request_id=%s role=%s", req.request_id, role)
        raise pipeline.abort(req, RenderError("failed to store upload", details={"role": role})) from e

    # a client disconnect must not abort the child or skip cleanup
    task = asyncio.ensure_future(pipeline.render(req))
    try:
        rec = await asyncio.shield(task)
    except RenderError:
        raise
    except asyncio.CancelledError:
        log.warning("client_gone request_id=%s render continues", req.request_id)
        task.add_done_callback(_unclaimed_render_done(req.request_id))
        raise
    except Exception as e:
        log.exception("render_crashed request_id=%s", req.request_id)
        raise RenderError("Server error", request_id=req.request_id, details={"exception": e.__class__.__name__}) from e
    return _render_response(request, rec)


class DeliveryFileResponse(FileResponse):
    """FileResponse that settles a claimed delivery token.

    A full send completes the token through the background task. A send
    that raises (client gone, cancelled) hands the token back.
    """

    def __init__(self, rec: DeliveryRecord, stat_result: os.stat_result) -> None:
        super().__init__(
            path=str(rec.artifact.path),
            media_type="video/mp4",
            filename=f"{rec.request_id}.mp4",
            stat_result=stat_result,
            background=BackgroundTask(registry.complete, rec.token),
        )
        self.token = rec.token

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except BaseException:
            registry.release(self.token)
            raise


@app.get("/download/{token}", name="download")
def download(token: str):
    rec = registry.claim(token)
    try:
        st = os.stat(rec.artifact.path)
    except OSError:
        registry.release(token)
        raise NotFoundError("download token not found")
    return DeliveryFileResponse(rec, st)
