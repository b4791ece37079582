import asyncio
import time
import uuid
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from context_sync.api.routes import get_coordinator, router
from context_sync.core.config import settings
from context_sync.core.logging import clear_request_context, configure_logging, get_request_id, log_event, set_request_context
from context_sync.db.errors import DatabaseOperationError
from context_sync.schemas.api import ErrorEnvelope, ErrorInfo
from context_sync.services.scheduler import SyncScheduler

configure_logging()
app = FastAPI(title="Context Sync Service API", version=settings.APP_VERSION)
app.include_router(router)

WORKSPACE_PATH_PREFIX = "/v1/workspaces/"


def _workspace_from_path(path: str) -> str | None:
    if not path.startswith(WORKSPACE_PATH_PREFIX):
        return None
    return path[len(WORKSPACE_PATH_PREFIX):].split("/", 1)[0] or None


def _envelope(code: str, message: str, retryable: bool, details: dict | None = None) -> dict:
    return ErrorEnvelope(
        error=ErrorInfo(
            code=code,
            message=message,
            details=details,
            request_id=get_request_id(),
            retryable=retryable,
            timestamp=datetime.now(timezone.utc),
        )
    ).model_dump(mode="json")


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    started = time.perf_counter()
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    workspace_id = _workspace_from_path(request.url.path)
    set_request_context(request_id=request_id, workspace_id=workspace_id)
    request.state.request_id = request_id

    req_size = int(request.headers.get("content-length") or 0)
    status_code = 500
    response_size = 0
    error_code = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        response_size = int(response.headers.get("content-length") or 0)
        if status_code >= 400:
            error_code = str(status_code)
        response.headers["X-Request-ID"] = request_id
        return response
    except Exception:
        error_code = "internal_server_error"
        raise
    finally:
        duration_ms = int((time.perf_counter() - started) * 1000)
        log_event(
            "api.request.completed",
            payload={
                "endpoint": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "duration_ms": duration_ms,
                "request_size_bytes": req_size,
                "response_size_bytes": response_size,
                "error_code": error_code,
            },
            plane="data",
        )
        clear_request_context()


@app.exception_handler(HTTPException)
async def contract_error_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        return JSONResponse(status_code=exc.status_code, content=exc.detail)
    return await http_exception_handler(request, exc)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = {"errors": [{"loc": list(error.get("loc", ())), "msg": error.get("msg")} for error in exc.errors()]}
    return JSONResponse(status_code=422, content=_envelope("VALIDATION_ERROR", "Request validation failed", False, details))


@app.exception_handler(DatabaseOperationError)
async def database_error_handler(request: Request, exc: DatabaseOperationError):
    log_event("api.database.failed", level=40, payload={"error_code": exc.error_code, "sqlstate": exc.sqlstate})
    return JSONResponse(
        status_code=503 if exc.retryable else 500,
        content=_envelope(exc.error_code, "Database operation failed", exc.retryable, {"sqlstate": exc.sqlstate}),
    )


@app.on_event("startup")
async def _start_scheduler() -> None:
    if not settings.SCHEDULER_ENABLED:
        log_event("startup.completed", payload={"scheduler": False}, plane="control")
        return
    stop = asyncio.Event()
    scheduler = SyncScheduler(get_coordinator())
    app.state.scheduler_stop = stop
    app.state.scheduler_task = asyncio.create_task(scheduler.run_forever(stop))
    log_event("startup.completed", payload={"scheduler": True}, plane="control")


@app.on_event("shutdown")
async def _stop_scheduler() -> None:
    stop = getattr(app.state, "scheduler_stop", None)
    task = getattr(app.state, "scheduler_task", None)
    if stop is None or task is None:
        return
    stop.set()
    await task


def run() -> None:
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    run()
