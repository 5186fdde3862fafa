from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import Config, load_config
from .errors import NotFoundError, ValidationError, VidPulseError
from .models import job_results_view, job_status_view
from .runtime import Runtime, build_runtime
from .utils import configure_logging, log_event

JOB_NOT_FOUND_DETAIL = "The requested job ID does not exist or has expired"
INVALID_BODY_DETAIL = "Request body must be a JSON object with a channelId field"


class AnalyzeRequest(BaseModel):
    channelId: Any = None


def create_app(config: Config | None = None, *, runtime: Runtime | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = configure_logging("vidpulse.api")
        active = runtime or build_runtime(config or load_config())
        await active.start()
        app.state.runtime = active
        log_event(logger, logging.INFO, "api_started", name=active.config.app.name)
        try:
            yield
        finally:
            await active.stop()

    app = FastAPI(title="VidPulse API", lifespan=lifespan)

    @app.exception_handler(VidPulseError)
    async def _vidpulse_error(request: Request, exc: VidPulseError) -> JSONResponse:
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response(ValidationError("Invalid request body", detail=INVALID_BODY_DETAIL))

    @app.get("/")
    def root() -> dict[str, str]:
        return {"service": "VidPulse API"}

    @app.get("/health")
    def health() -> dict[str, object]:
        return {
            "ok": True,
            "version": _get_version(),
            "time": datetime.now(tz=timezone.utc).isoformat(),
        }

    @app.post("/analyze")
    async def analyze(
        payload: AnalyzeRequest | None = None,
        runtime: Runtime = Depends(_get_runtime),
    ) -> dict[str, object]:
        channel_id = payload.channelId if payload is not None else None
        job = await runtime.producer.submit(channel_id)
        minutes = job.total_items * runtime.producer.minutes_per_video
        return {
            "status": job.status,
            "jobId": job.id,
            "message": (
                f"Processing {job.total_items} videos for channel {job.channel_id}. "
                f"Check status at /job-status/{job.id}"
            ),
            "videoCount": job.total_items,
            "estimatedTime": f"{minutes} minutes",
            "checkStatusUrl": f"/job-status/{job.id}",
        }

    @app.get("/job-status/{job_id}")
    async def job_status(job_id: str, runtime: Runtime = Depends(_get_runtime)) -> dict[str, object]:
        return job_status_view(_require_job(runtime, job_id))

    @app.get("/job-results/{job_id}")
    async def job_results(job_id: str, runtime: Runtime = Depends(_get_runtime)) -> dict[str, object]:
        return job_results_view(_require_job(runtime, job_id))

    return app


def _error_response(exc: VidPulseError) -> JSONResponse:
    body: dict[str, Any] = {"error": exc.message}
    if exc.detail:
        body["message"] = exc.detail
    return JSONResponse(body, status_code=exc.status_code)


def _get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _require_job(runtime: Runtime, job_id: str):
    job = runtime.store.get(job_id)
    if job is None:
        raise NotFoundError("Job not found", detail=JOB_NOT_FOUND_DETAIL)
    return job


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("vidpulse")
    except Exception:  # noqa: BLE001
        return "unknown"


app = create_app()
