"""
hireloop - FastAPI Backend

Candidate workflow automation driven by Linear webhooks.

Run Instructions:
-----------------
1. Install dependencies:
   pip install -e .

2. Run the app locally with uvicorn:
   uvicorn main:app --host 0.0.0.0 --port 8000 --reload

3. Test /health endpoint:
   curl http://localhost:8000/health

4. Point the Linear webhook at:
   https://<host>/webhooks/linear
"""
import time

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from hireloop import __version__
from hireloop.api import webhooks_router
from hireloop.core.config import validate_config
from hireloop.core.redis import close_redis, get_redis
from hireloop.services.errors import HireloopError, to_http_exception
from hireloop.services.logging import log_error, log_request, logger

app = FastAPI(
    title="hireloop API",
    description="""
    hireloop - candidate workflow automation

    Linear is the system of record: issues are candidates, projects are job
    postings. Webhooks from Linear advance each candidate through document
    parsing, AI screening, interview invitations and rejection emails.

    ## Webhooks
    - `POST /webhooks/linear`: Linear issue, project and comment events
    - `POST /webhooks/email/inbound`: candidate email replies (Resend)
    """,
    version=__version__,
)

app.include_router(webhooks_router)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_id = request.client.host if request.client else "unknown"

        try:
            response = await call_next(request)
            log_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=(time.time() - start_time) * 1000,
                client_id=client_id,
            )
            return response
        except Exception as e:
            log_error("request_exception", str(e), {"path": request.url.path, "method": request.method})
            raise


app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(HireloopError)
async def hireloop_exception_handler(request: Request, exc: HireloopError):
    """Handle HireloopErrors with structured responses."""
    log_error(exc.code.value, str(exc), exc.context)
    http_exc = to_http_exception(exc)
    return JSONResponse(status_code=http_exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_error("unhandled_exception", str(exc), {"path": request.url.path, "method": request.method}, exception=exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred.",
        },
    )


@app.on_event("startup")
async def startup_event():
    config = validate_config()
    if not config["valid"]:
        logger.warning(f"Missing configuration: {', '.join(config['missing'])}")
    logger.info(f"hireloop {__version__} started")


@app.on_event("shutdown")
async def shutdown_event():
    await close_redis()


@app.get("/health")
async def health():
    """Check API health, configuration and Redis connectivity."""
    config = validate_config()
    redis_ok = True
    try:
        await get_redis().ping()
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")
        redis_ok = False

    healthy = config["valid"] and redis_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "degraded",
            "version": __version__,
            "checks": {
                "config": config,
                "redis": "ok" if redis_ok else "unavailable",
            },
        },
    )
