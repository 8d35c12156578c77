"""
Correlation ID based tracing for the payment service
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
    """Times one operation and logs it as a structured TRACE record"""

    def __init__(self, name: str, **tags):
        self.span_id = str(uuid.uuid4())[:8]
        self.trace_id = trace_id_var.get() or str(uuid.uuid4())[:16]
        self.name = name
        self.tags = dict(tags)
        self.status = "ok"
        self.start_time = None

    def add_tag(self, key: str, value):
        self.tags[key] = value
        return self

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self.status = "error"
            self.tags["error.type"] = exc_type.__name__
        duration_ms = (time.time() - self.start_time) * 1000
        logger.info(f"TRACE: {json.dumps({'trace_id': self.trace_id, 'span_id': self.span_id, 'operation': self.name, 'duration_ms': round(duration_ms, 2), 'status': self.status, 'tags': self.tags}, default=str)}")
        return False

async def tracing_middleware(request: Request, call_next):
    """Attach request/trace ids to request.state and echo them on the response"""
    trace_id = request.headers.get("X-Trace-Id") or str(uuid.uuid4())[:16]
    request_id = str(uuid.uuid4())
    request.state.trace_id = trace_id
    request.state.request_id = request_id
    token = trace_id_var.set(trace_id)
    try:
        response = await call_next(request)
    finally:
        trace_id_var.reset(token)
    response.headers["X-Trace-Id"] = trace_id
    response.headers["X-Request-Id"] = request_id
    return response
