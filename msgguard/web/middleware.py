from __future__ import annotations

import time
import uuid
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse


def _client_ip(request: Request) -> Optional[str]:
    return getattr(getattr(request, "client", None), "host", None)


class RequestGuardMiddleware:
    """
    1) trace_id on request.state and the X-Trace-Id response header
    2) request size limit for bodies
    3) one access log line per request (never the body)
    """

    def __init__(self, *, max_request_bytes: int, logger=None):
        self.max_request_bytes = int(max_request_bytes)
        self.logger = logger

    async def __call__(self, request: Request, call_next):  # noqa: ANN001
        trace_id = request.headers.get("X-Trace-Id") or uuid.uuid4().hex
        request.state.trace_id = trace_id[:64]
        t0 = time.time()

        if request.method in {"POST", "PUT", "PATCH"}:
            declared = request.headers.get("content-length")
            too_large = False
            if declared is not None and declared.isdigit():
                too_large = int(declared) > self.max_request_bytes
            if not too_large:
                body = await request.body()
                too_large = len(body) > self.max_request_bytes
            if too_large:
                if self.logger:
                    self.logger.warning(f"[{request.state.trace_id}] rejected {request.method} {request.url.path}: request too large")
                return JSONResponse(
                    status_code=413,
                    content={"detail": "Request too large.", "code": "request_too_large"},
                    headers={"X-Trace-Id": request.state.trace_id},
                )

        resp = await call_next(request)
        resp.headers["X-Trace-Id"] = request.state.trace_id
        if self.logger:
            ms = int((time.time() - t0) * 1000)
            self.logger.info(f"[{request.state.trace_id}] {request.method} {request.url.path} -> {resp.status_code} ({ms}ms) ip={_client_ip(request)}")
        return resp
