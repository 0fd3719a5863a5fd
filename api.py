"""
HTTP API for the SlideMint renderer.

Routes:
- POST /generate        synchronous render, answers with the video URL
- POST /jobs            asynchronous render, answers 202 with a job id
- GET  /jobs/{job_id}   poll a job
- GET  /health          readiness and required environment
- GET  /videos/<file>   finished videos (static)
"""
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field, ValidationError

import config as settings
from pipeline.jobs import InMemoryJobStore, RenderQueue
from pipeline.jobs.credits import CreditsLedger
from pipeline.models import FitMode, PlaceholderPolicy
from pipeline.renderer import RenderFailure, SlideshowRenderer
from pipeline.renderer.video_generator import INSUFFICIENT_CREDITS
from utils.helpers import ensure_directory
from utils.logger import setup_logger

logger = setup_logger(__name__)

PAYMENT_REQUIRED_CODES = {INSUFFICIENT_CREDITS}


class RenderBody(BaseModel):
    """Request body shared by /generate and /jobs (camelCase on the wire)."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    image_urls: Any = Field(default=None, alias="imageUrls")
    duration: Optional[float] = None
    loop_count: Optional[int] = Field(default=None, alias="loopCount")
    fit_mode: Optional[FitMode] = Field(default=None, alias="fitMode")
    ken_burns: Optional[bool] = Field(default=None, alias="kenBurns")
    placeholder_policy: Optional[PlaceholderPolicy] = Field(default=None, alias="placeholderPolicy")
    license_key: Optional[str] = Field(default=None, alias="licenseKey")


def _error(status: int, message: str, with_ok: bool = True) -> JSONResponse:
    body = {"ok": False, "error": message} if with_ok else {"error": message}
    return JSONResponse(status_code=status, content=body)


async def _parse_body(request: Request):
    """Return (RenderBody, None) or (None, error response)."""
    try:
        payload = await request.json()
    except ValueError:
        return None, "Request body must be JSON"
    if not isinstance(payload, dict):
        return None, "Request body must be a JSON object"
    try:
        body = RenderBody.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ()))
        return None, f"Invalid field {field}: {first.get('msg')}"
    if not isinstance(body.image_urls, list) or not body.image_urls:
        return None, "imageUrls must be a non-empty list"
    return body, None


def _license_key(request: Request, body: RenderBody) -> Optional[str]:
    return request.headers.get("x-license-key") or body.license_key


def _render_options(body: RenderBody, license_key: Optional[str]) -> dict:
    return {
        "duration": body.duration,
        "loop_count": body.loop_count,
        "fit_mode": body.fit_mode.value if body.fit_mode else None,
        "ken_burns": body.ken_burns,
        "placeholder_policy": body.placeholder_policy.value if body.placeholder_policy else None,
        "license_key": license_key,
    }


def create_app(
    renderer: Optional[SlideshowRenderer] = None,
    queue: Optional[RenderQueue] = None,
    store=None,
    credits: Optional[CreditsLedger] = None,
    require_license: bool = settings.REQUIRE_LICENSE,
    video_dir=settings.VIDEO_OUTPUT_DIR,
) -> FastAPI:
    """Build the FastAPI app around injected collaborators."""
    renderer = renderer or SlideshowRenderer(credits=credits, output_dir=video_dir)
    store = store if store is not None else InMemoryJobStore()
    queue = queue or RenderQueue(renderer, store, output_dir=video_dir, base_url=renderer.base_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await queue.start()
        try:
            yield
        finally:
            await queue.stop()

    app = FastAPI(title="SlideMint renderer", lifespan=lifespan)
    app.state.renderer = renderer
    app.state.queue = queue
    app.state.store = store

    @app.post("/generate")
    async def generate(request: Request):
        body, problem = await _parse_body(request)
        if problem:
            return _error(400, problem, with_ok=False)
        license_key = _license_key(request, body)
        if require_license and not license_key:
            return _error(402, "License required")

        try:
            result = await renderer.render(body.image_urls, **_render_options(body, license_key))
        except RenderFailure as e:
            if e.code in PAYMENT_REQUIRED_CODES:
                return _error(402, e.message)
            return _error(500, e.message, with_ok=False)
        except Exception as e:
            logger.error(f"[api] /generate crashed: {e}")
            return _error(500, "Video generation failed", with_ok=False)

        return {"videoUrl": result.video_url}

    @app.post("/jobs")
    async def submit_job(request: Request):
        body, problem = await _parse_body(request)
        if problem:
            return _error(400, problem)
        license_key = _license_key(request, body)
        if require_license and not license_key:
            return _error(402, "License required")

        refs = renderer.normalize(body.image_urls)
        if not refs:
            return _error(400, "No valid image URLs")

        job_id = queue.submit(refs, **_render_options(body, license_key))
        return JSONResponse(status_code=202, content={"ok": True, "jobId": job_id, "count": len(refs)})

    @app.get("/jobs/{job_id}")
    async def job_status(job_id: str):
        projection = queue.status(job_id)
        if projection is None:
            return _error(404, "Job not found")
        return projection

    @app.get("/health")
    async def health():
        missing = [name for name in settings.REQUIRED_ENV if not os.getenv(name)]
        return {
            "ok": not missing,
            "missing": missing,
            "env": {
                "PUBLIC_BASE_URL": settings.PUBLIC_BASE_URL or None,
                "VIDEO_OUTPUT_DIR": str(video_dir),
                "MAX_RUNNING_JOBS": settings.MAX_RUNNING_JOBS,
            },
            "time": datetime.now(timezone.utc).isoformat(),
        }

    ensure_directory(video_dir)
    app.mount("/videos", StaticFiles(directory=str(video_dir)), name="videos")
    return app


app = create_app()
