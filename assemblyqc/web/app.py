"""FastAPI application for AssemblyQC."""

from __future__ import annotations

from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from assemblyqc import __version__
from assemblyqc.core.errors import AssemblyQCError
from assemblyqc.core.logging import configure_logging
from assemblyqc.db.connection import close_db
from assemblyqc.web.dependencies import status_for
from assemblyqc.web.routes import audit, calibration, elements, review

# Initialize structured logging
configure_logging()
logger = structlog.get_logger()

app = FastAPI(
    title="AssemblyQC",
    description="Assembly inspection: GPS calibration, element identity, review workflow and audit trail",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)


# Request Logging Middleware
class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        structlog.contextvars.clear_contextvars()

        request_id = request.headers.get("X-Request-ID", str(uuid4()))
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
            logger.info("request_completed", status_code=response.status_code)
            return response
        except Exception as exc:
            logger.error("request_failed", error=str(exc))
            raise


app.add_middleware(RequestLoggingMiddleware)


# Domain errors that escape a route without being translated
@app.exception_handler(AssemblyQCError)
async def domain_error_handler(request: Request, exc: AssemblyQCError):
    return JSONResponse(status_code=status_for(exc), content={"detail": exc.to_dict()})


@app.get("/health")
async def health():
    return {"status": "ok", "version": __version__}


@app.on_event("shutdown")
async def shutdown():
    await close_db()


# Include Routers
app.include_router(calibration.router)
app.include_router(elements.router)
app.include_router(review.router)
app.include_router(audit.router)
