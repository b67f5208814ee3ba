import time
import uuid
import logging
import sys
from fastapi import Request
from fastapi.responses import JSONResponse

from transfer_orchestrator.errors import ErrorKind, GENERIC_FAILURE_MESSAGE

LOG_FORMAT = (
    '{"ts": "%(asctime)s", "level": "%(levelname)s", "service": "transfer-orchestrator", '
    '"logger": "%(name)s", "correlation_id": "%(correlation_id)s", "message": "%(message)s"}'
)

class CorrelationIdFilter(logging.Filter):
    """Guarantees every record carries a correlation_id for the format string."""

    def filter(self, record):
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "N/A"
        return True

def configure_logging(level: str = "INFO"):
    if logging.root.handlers:
        logging.root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(CorrelationIdFilter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))

class CorrelationIdLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        if 'extra' not in kwargs:
            kwargs['extra'] = {}
        kwargs['extra']['correlation_id'] = self.extra.get('correlation_id') or 'N/A'
        return msg, kwargs

def get_logger(correlation_id: str = None, name: str = "transfer_orchestrator"):
    logger = logging.getLogger(name)
    return CorrelationIdLoggerAdapter(logger, {'correlation_id': correlation_id})

async def add_process_time_header(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - started
    response.headers["X-Process-Time"] = f"{elapsed:.4f}"
    get_logger(getattr(request.state, "correlation_id", None)).info(
        f"Request finished: {request.method} {request.url.path} -> {response.status_code} in {elapsed:.3f}s"
    )
    return response

async def correlation_id_middleware(request: Request, call_next):
    correlation_id = request.headers.get("X-Correlation-ID")
    if not correlation_id:
        correlation_id = str(uuid.uuid4())

    request.state.correlation_id = correlation_id
    get_logger(correlation_id).info(f"Request started: {request.method} {request.url.path}")

    response = await call_next(request)
    response.headers["X-Correlation-ID"] = correlation_id
    return response

async def central_exception_handler(request: Request, call_next):
    correlation_id = getattr(request.state, 'correlation_id', 'N/A')
    logger = get_logger(correlation_id)
    try:
        return await call_next(request)
    except Exception as e:
        logger.error(f"Unhandled exception on {request.url.path}: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "error_kind": ErrorKind.PROVIDER_FAULT.value,
                "message": GENERIC_FAILURE_MESSAGE,
                "correlation_id": correlation_id,
            },
        )
