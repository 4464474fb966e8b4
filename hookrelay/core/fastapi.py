"""FastAPI helpers shared by the HTTP surface."""

import uuid

import structlog
from fastapi import Request, Response, status
from fastapi.responses import JSONResponse

logger = structlog.get_logger("hookrelay")

REQUEST_ID_HEADER = "X-Request-ID"


def add_request_id_header(response: Response) -> str:
    """Attach a fresh request id to the response and return it."""
    request_id = str(uuid.uuid4())
    response.headers[REQUEST_ID_HEADER] = request_id
    return request_id


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Turn unexpected exceptions into a JSON 500 carrying a request id."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        request_id=request_id,
        error=str(exc),
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "request_id": request_id},
        headers={REQUEST_ID_HEADER: request_id},
    )
