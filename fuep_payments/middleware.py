"""
Request tracing middleware.

Every request gets a request_id (taken from ``X-Request-ID`` when the caller
or the gateway sends one) that is bound to the structlog context and echoed
back. Webhook requests additionally carry the provider name so a gateway
callback can be followed through the service and webhook logs.
"""
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from structlog.contextvars import bind_contextvars, clear_contextvars

from fuep_payments.logging_config import get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
WEBHOOK_PREFIX = "/webhooks/"

# Load balancer health checks; logged at debug only.
QUIET_PATHS = ("/health",)


def _request_context(request: Request, request_id: str) -> dict:
    path = request.url.path
    context = {"request_id": request_id, "method": request.method, "path": path}
    if path.startswith(WEBHOOK_PREFIX):
        context["provider"] = path[len(WEBHOOK_PREFIX):].split("/", 1)[0].lower()
    return context


async def request_id_middleware(request: Request, call_next: Callable) -> Response:
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    request.state.request_id = request_id

    clear_contextvars()
    bind_contextvars(**_request_context(request, request_id))
    log = logger.debug if request.url.path in QUIET_PATHS else logger.info

    started = time.perf_counter()
    log("request_started", client_host=request.client.host if request.client else None)
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("request_failed", duration_ms=round((time.perf_counter() - started) * 1000, 2))
        raise
    else:
        log(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
    finally:
        clear_contextvars()
