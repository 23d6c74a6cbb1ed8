"""HTTP surface for PatchGate.

Bodies are read as raw JSON and validated by the service so that malformed
requests come back as 400 invalid_request with the same error envelope as
every other failure.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .errors import InvalidRequest, PatchGateError
from .service import PatchGateService


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        raise InvalidRequest("Request body must be valid JSON.") from e


def create_app(service: PatchGateService) -> FastAPI:
    """
    Build the FastAPI app around an owned service instance.

    The lifespan starts the sandbox worker on startup and stops it on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        await service.stop()

    app = FastAPI(title="PatchGate", version=__version__, lifespan=lifespan)
    app.state.service = service

    @app.exception_handler(PatchGateError)
    async def patchgate_error(request: Request, exc: PatchGateError) -> JSONResponse:  # noqa: ARG001
        return JSONResponse(status_code=exc.status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:  # noqa: ARG001
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "internal_error", "message": "Internal server error."},
        )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "version": __version__,
            "worker_running": service.worker.running,
            "jobs": len(service.queue),
            "pending": service.queue.pending(),
        }

    @app.post("/preview")
    async def preview(request: Request) -> dict[str, Any]:
        return service.enqueue(await _json_body(request))

    @app.get("/preview/{job_id}")
    async def preview_status(job_id: str) -> dict[str, Any]:
        return service.status(job_id)

    @app.post("/apply")
    async def apply(request: Request) -> dict[str, Any]:
        return await service.apply(await _json_body(request))

    return app
