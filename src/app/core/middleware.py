"""
Global exception handlers and request correlation
"""
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
import logging

from core.request_context import get_request_id, new_request_id
from core.responses import BusinessException, unexpected_error_body
from services.paypal_client import ProviderError

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


async def request_context_middleware(request: Request, call_next):
    """Bind a fresh correlation id for every log line of the request"""
    request_id = new_request_id()
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def business_exception_handler(request: Request, exc: BusinessException):
    if exc.status_code >= 500:
        logger.error(f"Business exception: {exc.message}")
    else:
        logger.warning(f"Business exception: {exc.message}")

    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def provider_exception_handler(request: Request, exc: ProviderError):
    """PayPal failures surface as 500 so webhook deliveries are retried"""
    logger.error(f"PayPal error: {exc} (status={exc.status_code}, code={exc.code})")

    return JSONResponse(status_code=500, content=unexpected_error_body(exc, get_request_id()))


async def http_exception_handler_custom(request: Request, exc: HTTPException):
    logger.warning(f"HTTP exception: {exc.detail}")

    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)

    return JSONResponse(status_code=500, content=unexpected_error_body(exc, get_request_id()))


def setup_exception_handlers(app):
    app.add_exception_handler(BusinessException, business_exception_handler)
    app.add_exception_handler(ProviderError, provider_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler_custom)
    app.add_exception_handler(Exception, general_exception_handler)
