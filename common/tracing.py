"""
Request tracing: one correlation id per inbound request, propagated through logs
"""
import uuid
import time
import json
from typing import Optional
from contextvars import ContextVar
from fastapi import Request
import logging

logger = logging.getLogger(__name__)

trace_id_var: ContextVar[Optional[str]] = ContextVar('trace_id', default=None)

class TraceSpan:
    """Timing span for one request"""

    def __init__(self, name: str, service_name: str, trace_id: str = None):
        self.trace_id = trace_id or uuid.uuid4().hex[:16]
        self.name = name
        self.service_name = service_name
        self.start_time = time.time()
        self.tags = {}
        self.status = "ok"
        self._token = trace_id_var.set(self.trace_id)

    def add_tag(self, key: str, value):
        self.tags[key] = value
        return self

    def set_error(self, error: Exception):
        self.status = "error"
        self.add_tag("error.type", type(error).__name__)
        self.add_tag("error.message", str(error))
        return self

    def finish(self):
        duration_ms = (time.time() - self.start_time) * 1000
        logger.info(f"TRACE: {json.dumps({'trace_id': self.trace_id, 'service': self.service_name, 'operation': self.name, 'duration_ms': round(duration_ms, 2), 'status': self.status, 'tags': self.tags}, default=str)}")
        trace_id_var.reset(self._token)
        return self

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            self.set_error(exc_val)
        self.finish()

class TraceIdFilter(logging.Filter):
    """Stamp every log record with the current trace id"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = trace_id_var.get() or "-"
        return True

def tracing_middleware(service_name: str):
    """Build a FastAPI http middleware that opens a span per request"""
    async def middleware(request: Request, call_next):
        operation_name = f"{request.method} {request.url.path}"
        with TraceSpan(operation_name, service_name, request.headers.get("X-Trace-ID")) as span:
            request.state.trace_id = span.trace_id
            try:
                response = await call_next(request)
            except Exception as e:
                span.set_error(e)
                raise
            span.add_tag("http.status_code", response.status_code)
            if response.status_code >= 500:
                span.status = "error"
            response.headers["X-Trace-ID"] = span.trace_id
            return response
    return middleware
