"""
Web management API.

Plain HTTP control surface for the supervised app: status, exit, restart,
re-sync and options reload. Paths are matched exactly under the configured
prefix; every other request gets "ERROR: No such command.". Callers outside
a non-empty whitelist are rejected before any handler runs.
"""

import logging
import re
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .errors import ConfigurationError, SyncError

logger = logging.getLogger(__name__)

DURATION_PATTERN = re.compile(r"(?:\d+(?:\.\d+)?[hms]?)+")
DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)([hms]?)")
DURATION_UNITS = {"h": 3600, "m": 60, "s": 1, "": 1}


def parse_duration(value: str) -> float:
    """
    Parse a compact duration such as ``90``, ``45s``, ``30m`` or ``1h30m``.

    Parts are summed; a bare number means seconds.
    """
    text = re.sub(r"\s+", "", (value or "").lower())
    if not text:
        return 0.0
    if not DURATION_PATTERN.fullmatch(text):
        raise ValueError(f"Invalid duration: {value!r}")
    return float(sum(float(n) * DURATION_UNITS[unit] for n, unit in DURATION_PART.findall(text)))


def get_runtime(request: Request):
    return request.app.state.runtime


router = APIRouter(default_response_class=PlainTextResponse)


@router.get("/", response_class=JSONResponse)
async def status(runtime=Depends(get_runtime)):
    """Run id, uptime, remote, revision, process and effective options."""
    return await runtime.status()


@router.post("/exit")
async def exit_app(
    delay: Optional[str] = None,
    code: int = 0,
    runtime=Depends(get_runtime),
):
    """Exit after an optional delay."""
    try:
        seconds = parse_duration(delay)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"Receiving exit signal delay={seconds:g}s code={code}")
    runtime.schedule_exit(code, seconds)
    return "OK: Exiting ..."


@router.post("/restart")
async def restart_app(runtime=Depends(get_runtime)):
    """Restart the main process."""
    if await runtime.supervisor.request_restart():
        return "OK: Restarting ..."
    return f"OK: Nothing to restart, supervisor is {runtime.supervisor.state.value}."


async def resync(runtime) -> str:
    try:
        return await runtime.synchronizer.resync()
    except SyncError as e:
        logger.error(f"Re-sync failed: {e}")
        raise HTTPException(status_code=500, detail=f"Sync failed: {e}")


@router.post("/sync")
async def sync_app(runtime=Depends(get_runtime)):
    """Force a re-sync of the codebase; the running process is left alone."""
    revision = await resync(runtime)
    return f"OK: Synced {revision}".rstrip()


@router.post("/sync/restart")
async def sync_and_restart(runtime=Depends(get_runtime)):
    revision = await resync(runtime)
    restarted = await runtime.supervisor.request_restart()
    action = "restarting ..." if restarted else "nothing to restart."
    return f"OK: Synced {revision}, {action}"


@router.post("/sync/exit")
async def sync_and_exit(code: int = 0, runtime=Depends(get_runtime)):
    revision = await resync(runtime)
    runtime.schedule_exit(code)
    return f"OK: Synced {revision}, exiting ..."


@router.post("/reload")
async def reload_options(runtime=Depends(get_runtime)):
    """Reload the options file; applies to the next process start."""
    try:
        await runtime.reload_options()
    except ConfigurationError as e:
        logger.error(f"Reload failed: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    return "OK: Reloaded."


def create_app(runtime) -> FastAPI:
    """Build the API application for a degu runtime."""
    prefix = runtime.options.api.normalized_prefix

    app = FastAPI(
        title="degu",
        description="Web management API for the supervised app",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.router.redirect_slashes = False
    app.state.runtime = runtime
    app.include_router(router, prefix=prefix.rstrip("/"))

    @app.middleware("http")
    async def check_whitelist(request: Request, call_next):
        whitelist = runtime.options.api.whitelist
        ip = request.client.host if request.client else None
        if whitelist and ip not in whitelist:
            logger.warning(f"Rejected API request url={request.url.path} ip={ip}")
            return PlainTextResponse("ERROR: IP not allowed.", status_code=403)
        return await call_next(request)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code in (404, 405):
            logger.warning(f"Received invalid command {request.method} {request.url.path}")
            return PlainTextResponse("ERROR: No such command.", status_code=404)
        return PlainTextResponse(f"ERROR: {exc.detail}", status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        fields = ", ".join(str(err["loc"][-1]) for err in exc.errors())
        return PlainTextResponse(f"ERROR: Invalid parameter {fields}.", status_code=400)

    return app
