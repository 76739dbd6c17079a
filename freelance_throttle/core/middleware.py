"""HTTP middleware for request correlation and rate limit bookkeeping.

``request_id_middleware``:
- Accepts incoming X-Request-ID header or generates a UUID
- Stores request_id in contextvars for access throughout the request lifecycle
- Injects request_id and total duration into response headers

``rate_limit_outcome_middleware``:
- Adds X-RateLimit-* headers for every policy a request passed through
- Refunds hits that a policy does not count (successful logins, failed
  realtime messages) once the response status is known

Usage:
    app.middleware("http")(rate_limit_outcome_middleware)
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request, Response

from freelance_throttle.core.config import settings
from freelance_throttle.core.logging import clear_request_id, set_request_id
from freelance_throttle.core.rate_limit import DECISIONS_STATE_ATTR, get_request_gate

logger = logging.getLogger(__name__)


async def request_id_middleware(request: Request, call_next) -> Response:
    """HTTP middleware for request ID generation and propagation.

    If the client provides an X-Request-ID header (configurable via
    LOG_REQUEST_ID_HEADER), that value is used. Otherwise, a new UUID
    is generated.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: The response from the next handler with request_id and
            duration headers added.
    """

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    duration_ms = (time.perf_counter() - start) * 1000
    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response


async def rate_limit_outcome_middleware(request: Request, call_next) -> Response:
    """Finish the rate limit bookkeeping once the handler has answered.

    The route dependency records a decision per evaluated policy on
    ``request.state``; rejected requests already carry their headers from
    the 429 handler.
    """

    # Touch state before dispatch so the dict is shared with the route's Request
    state = request.state
    try:
        response: Response = await call_next(request)
    except Exception:
        # Unhandled errors become a 500 in the outermost handler
        await _settle_all(request, getattr(state, DECISIONS_STATE_ATTR, None), 500)
        raise

    decisions = getattr(state, DECISIONS_STATE_ATTR, None)
    if not decisions:
        return response

    tightest = None
    for decision in decisions:
        if decision.allowed and decision.policy.standard_headers:
            if tightest is None or decision.result.remaining < tightest.result.remaining:
                tightest = decision

    if tightest is not None and response.status_code != 429:
        for name, value in tightest.result.to_headers().items():
            response.headers[name] = value

    await _settle_all(request, decisions, response.status_code)
    return response


async def _settle_all(request: Request, decisions, status_code: int) -> None:
    """Apply every policy's skip rule for the final status code."""

    if not decisions:
        return
    gate = get_request_gate(request)
    for decision in decisions:
        refunded = await gate.settle(decision, status_code)
        if refunded:
            logger.debug(
                "rate_limit.refunded",
                extra={
                    "policy": decision.policy.name,
                    "requester": decision.key,
                    "status_code": status_code,
                },
            )
