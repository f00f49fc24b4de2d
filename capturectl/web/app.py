from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse, JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import Response

from capturectl.config_loader import AppConfig, load_config_or_default
from capturectl.errors import InterfaceListError, SpawnError
from capturectl.logging_setup import (
    correlation_context,
    get_access_logger,
    get_correlation_id,
    setup_logging,
    short_uuid,
)
from capturectl.services.capture_controller import CaptureAttempt, CaptureResult
from capturectl.services.capture_supervisor import ARTIFACT_URL_PREFIX, CaptureSupervisor
from capturectl.services.worker_client import CaptureRequest

LOGGER = logging.getLogger(__name__)
ACCESS_LOGGER = get_access_logger()


def _validation_detail(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request"


async def _await_attempt(attempt: CaptureAttempt) -> CaptureResult:
    loop = asyncio.get_running_loop()
    future: asyncio.Future[CaptureResult] = loop.create_future()

    def _resolve(result: CaptureResult) -> None:
        if not future.done():
            future.set_result(result)

    attempt.add_done_callback(lambda result: loop.call_soon_threadsafe(_resolve, result))
    return await future


def create_app(config: Optional[AppConfig] = None, supervisor: Optional[CaptureSupervisor] = None) -> FastAPI:
    setup_logging()
    if supervisor is None:
        supervisor = CaptureSupervisor(config or load_config_or_default())

    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        persisted = supervisor.list_persisted()
        LOGGER.info(
            "Application startup capture_root=%s registry=%s persisted_captures=%s",
            supervisor.capture_root,
            supervisor.registry.path,
            [r.key for r in persisted],
            extra={"category": "CONFIG"},
        )
        yield
        # Workers keep running; the registry lets the next process find them.
        LOGGER.info(
            "Application shutdown live_captures=%s",
            supervisor.list_active_keys(),
            extra={"category": "CONFIG"},
        )

    app = FastAPI(title="Capture Supervisor", lifespan=lifespan)
    app.state.supervisor = supervisor

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        request_cid = request.headers.get("X-Correlation-Id") or short_uuid()
        start_ts = time.perf_counter()
        with correlation_context(request_cid):
            try:
                response: Response = await call_next(request)
            except Exception:
                elapsed_ms = int((time.perf_counter() - start_ts) * 1000)
                ACCESS_LOGGER.warning(
                    "HTTP request failed method=%s path=%s client=%s duration_ms=%s",
                    request.method,
                    request.url.path,
                    request.client.host if request.client else "-",
                    elapsed_ms,
                )
                LOGGER.exception("HTTP request failed method=%s path=%s", request.method, request.url.path, extra={"category": "ERRORS"})
                raise
            elapsed_ms = int((time.perf_counter() - start_ts) * 1000)
            ACCESS_LOGGER.info(
                "HTTP %s %s status=%s duration_ms=%s client=%s",
                request.method,
                request.url.path,
                response.status_code,
                elapsed_ms,
                request.client.host if request.client else "-",
            )
            response.headers["X-Correlation-Id"] = request_cid
            return response

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        LOGGER.warning(
            "HTTP exception method=%s path=%s status=%s detail=%s",
            request.method,
            request.url.path,
            exc.status_code,
            exc.detail,
            extra={"category": "ERRORS"},
        )
        return JSONResponse(status_code=exc.status_code, content={"success": False, "detail": exc.detail})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        LOGGER.exception(
            "Unhandled exception method=%s path=%s",
            request.method,
            request.url.path,
            extra={"category": "ERRORS"},
        )
        return JSONResponse(
            status_code=500,
            content={"success": False, "detail": "Internal server error", "correlationId": get_correlation_id()},
        )

    @app.post("/api/capture")
    async def start_capture(payload: Dict[str, Any]) -> JSONResponse:
        try:
            capture_request = CaptureRequest.model_validate(payload or {})
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=_validation_detail(exc)) from exc

        LOGGER.info(
            "API start capture output=%s iface=%s filter=%s duration=%s promiscuous=%s",
            capture_request.output,
            capture_request.interface_arg,
            capture_request.filter,
            capture_request.duration,
            capture_request.promiscuous,
            extra={"category": "CAPTURE"},
        )
        # Spawning runs in the threadpool; waiting for the worker holds no thread.
        try:
            attempt = await run_in_threadpool(supervisor.launch_capture, capture_request)
        except SpawnError as exc:
            result = supervisor.failed_result(capture_request, exc)
        else:
            result = await _await_attempt(attempt)
        if result.success:
            return JSONResponse(
                status_code=200,
                content={
                    "success": True,
                    "message": result.message,
                    "artifactLocation": result.artifact_location,
                    "outcome": result.outcome,
                },
            )
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": result.message, "outcome": result.outcome, "exitCode": result.exit_code},
        )

    @app.post("/api/stop-capture")
    def stop_capture(payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload = payload or {}
        key = str(payload.get("output") or "").strip()
        if key:
            outcome = supervisor.request_stop(key)
        else:
            outcome = supervisor.stop_active()
        LOGGER.info(
            "API stop capture key=%s success=%s mechanism=%s",
            key or "*",
            outcome.success,
            outcome.mechanism,
            extra={"category": "STOP"},
        )
        return {"success": outcome.success, "message": outcome.message}

    @app.get("/api/interfaces")
    def interfaces() -> JSONResponse:
        try:
            listing = supervisor.list_interfaces()
        except InterfaceListError as exc:
            return JSONResponse(status_code=500, content={"success": False, "message": str(exc)})
        if not listing.success:
            return JSONResponse(status_code=200, content={"success": False, "message": listing.message})
        return JSONResponse(
            status_code=200,
            content={"success": True, "interfaces": [i.to_payload() for i in listing.interfaces]},
        )

    @app.get("/api/captures")
    def captures() -> Dict[str, Any]:
        return {
            "active": supervisor.list_active_keys(),
            "persisted": [r.key for r in supervisor.list_persisted()],
        }

    @app.get("/api/health")
    def health() -> Dict[str, Any]:
        return {"status": "ok", "active": len(supervisor.list_active_keys())}

    @app.get(ARTIFACT_URL_PREFIX + "/{filename}")
    def download_capture(filename: str) -> FileResponse:
        target = supervisor.resolve_artifact(filename)
        if target is None:
            raise HTTPException(status_code=404, detail="File not found")
        LOGGER.info("Download capture file=%s", target, extra={"category": "FILES"})
        return FileResponse(path=target)

    return app
