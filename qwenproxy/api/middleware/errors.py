"""Error handlers for the proxy API."""

import json

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from qwenproxy.core.errors import ProxyError, UpstreamHTTPError, ValidationError
from qwenproxy.core.logging import get_logger


logger = get_logger(__name__)


def error_body(error_type: str, message: str) -> dict[str, dict[str, str]]:
    return {"error": {"type": error_type, "message": message}}


def setup_error_handlers(app: FastAPI) -> None:
    """Setup error handlers for the FastAPI application.

    Args:
        app: FastAPI application instance
    """

    @app.exception_handler(UpstreamHTTPError)
    async def upstream_http_error_handler(
        request: Request, exc: UpstreamHTTPError
    ) -> Response:
        """Pass the upstream client error through with its status and body."""
        logger.warning(
            "upstream_error_forwarded",
            status_code=exc.status_code,
            request_method=request.method,
            request_url=str(request.url.path),
        )
        media_type = "text/plain"
        try:
            json.loads(exc.body)
            media_type = "application/json"
        except ValueError:
            pass
        return Response(
            content=exc.body, status_code=exc.status_code, media_type=media_type
        )

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        log_kwargs = {
            "error_type": exc.error_type,
            "error_message": exc.message,
            "status_code": exc.status_code,
            "request_method": request.method,
            "request_url": str(request.url.path),
        }
        if exc.status_code == 401 and request.client:
            log_kwargs["client_ip"] = request.client.host

        if exc.status_code >= 500:
            logger.error("proxy_error", **log_kwargs)
        else:
            logger.warning("proxy_error", **log_kwargs)

        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.error_type, exc.message),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.warning(
            "request_validation_failed",
            errors=exc.errors(),
            request_url=str(request.url.path),
        )
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(
            str(part) for part in first.get("loc", ()) if part != "body"
        )
        message = first.get("msg", "Invalid request")
        if location:
            message = f"{location}: {message}"
        error = ValidationError(message, details=exc.errors())
        return JSONResponse(
            status_code=error.status_code,
            content=error_body(error.error_type, error.message),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        # Don't log stack trace for 404 errors as they're expected
        log_func = logger.debug if exc.status_code == 404 else logger.warning
        log_func(
            "http_exception",
            status_code=exc.status_code,
            error_message=exc.detail,
            request_method=request.method,
            request_url=str(request.url.path),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body("http_error", str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle all other unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error_message=str(exc),
            request_method=request.method,
            request_url=str(request.url.path),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content=error_body(
                "internal_server_error", "An internal server error occurred"
            ),
        )
