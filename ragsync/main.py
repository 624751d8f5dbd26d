import time
import uuid
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ragsync.api.routes import get_handler_registry, router
from ragsync.core.config import settings
from ragsync.core.logging import clear_request_context, configure_logging, log_event, set_request_context
from ragsync.schemas.api import ErrorEnvelope, ErrorInfo

configure_logging()
app = FastAPI(title="RAG Sync Service API", version=settings.APP_VERSION)
app.include_router(router)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    started = time.perf_counter()
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    set_request_context(request_id=request_id)
    request.state.request_id = request_id

    status_code = 500
    error_code = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        if status_code >= 400:
            error_code = str(status_code)
        response.headers["X-Request-ID"] = request_id
        return response
    except Exception:
        error_code = "internal_server_error"
        raise
    finally:
        log_event(
            "api.request.completed",
            payload={
                "endpoint": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "duration_ms": int((time.perf_counter() - started) * 1000),
                "error_code": error_code,
            },
            plane="control",
        )
        clear_request_context()


@app.exception_handler(HTTPException)
async def contract_error_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        return JSONResponse(status_code=exc.status_code, content=exc.detail)
    return await http_exception_handler(request, exc)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    try:
        correlation_id = uuid.UUID(str(getattr(request.state, "request_id", "")))
    except ValueError:
        correlation_id = uuid.uuid4()
    envelope = ErrorEnvelope(
        error=ErrorInfo(
            code="VALIDATION_ERROR",
            message="Request body failed validation",
            details={"errors": [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()]},
            correlation_id=correlation_id,
            retryable=False,
            timestamp=datetime.now(timezone.utc),
        )
    )
    return JSONResponse(status_code=422, content=envelope.model_dump(mode="json"))


@app.on_event("startup")
def _report_handlers() -> None:
    handler_registry = get_handler_registry()
    syncable = [handler.source_type for handler in handler_registry.syncable()]
    log_event(
        "startup.completed",
        payload={
            "registered_source_types": handler_registry.list_registered(),
            "unconfigured_source_types": sorted(set(handler_registry.list_registered()) - set(syncable)),
        },
        plane="control",
    )
