import json
import logging
import threading
import time
from collections import deque
from typing import Any, Deque, Dict, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response


def client_key(request: Request) -> str:
    """First X-Forwarded-For hop when the storefront proxy sets it, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    return (request.client.host if request.client else None) or ""


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, logger: Optional[logging.Logger] = None):
        super().__init__(app)
        self.logger = logger or logging.getLogger("storefront_ai.requests")
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(message)s"))
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

    async def dispatch(self, request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response: Response = await call_next(request)
            status = response.status_code
            return response
        finally:
            log: Dict[str, Any] = {
                "ts": int(time.time() * 1000),
                "ip": client_key(request),
                "method": request.method,
                "path": request.url.path,
                "status": status,
                "duration_ms": int((time.time() - start) * 1000),
            }
            self.logger.info(json.dumps(log))


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window limit per client address. Health checks are never limited."""

    exempt_paths = ("/api/health",)

    def __init__(self, app, max_requests: int = 60, window_seconds: int = 60):
        super().__init__(app)
        self.max_requests = int(max_requests)
        self.window = int(window_seconds)
        self.buckets: Dict[str, Deque[float]] = {}
        self.lock = threading.Lock()

    def allow(self, client: str, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        cutoff = now - self.window
        with self.lock:
            bucket = self.buckets.setdefault(client, deque())
            while bucket and bucket[0] < cutoff:
                bucket.popleft()
            if len(bucket) >= self.max_requests:
                return False
            bucket.append(now)
            return True

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.exempt_paths:
            return await call_next(request)
        if not self.allow(client_key(request)):
            return JSONResponse({"error": "rate_limited"}, status_code=429)
        return await call_next(request)
