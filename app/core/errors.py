import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class for errors the billing engine surfaces to callers."""
    status_code = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        errors: Optional[Dict[str, List[str]]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.errors = errors


class ConfigurationError(BillingError):
    """Missing secret or price mapping. Never retried automatically."""
    status_code = 500


class ValidationError(BillingError):
    status_code = 422

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, errors={field: [message]})


class AuthenticationError(BillingError):
    """Webhook payload failed signature or parse checks."""
    status_code = 400


class LookupMiss(BillingError):
    """A plan, customer, or subscription could not be resolved."""
    status_code = 404


class PlanNotFound(LookupMiss):
    pass


class CustomerNotFound(LookupMiss):
    pass


class SubscriptionNotFound(LookupMiss):
    pass


class GatewayCallFailure(BillingError):
    status_code = 500


class CouponExhausted(BillingError):
    status_code = 422


def _billing_error_body(exc: BillingError) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "message": exc.message}
    if exc.errors:
        body["errors"] = exc.errors
    return body


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        if exc.status_code >= 500:
            logger.error(f"Billing error on {request.url.path}: {exc.message}")
        else:
            logger.info(f"Billing request rejected on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=_billing_error_body(exc))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url}: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )
