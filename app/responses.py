"""
Outreach API Response Utilities
Standardized response format and error handling
"""
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from typing import Any, Dict, List, Optional
from datetime import datetime
import traceback

from .logging_config import api_logger


def paginated(items: List, total: int, page: int = 1, per_page: int = 20) -> Dict:
    """Paginated list response"""
    return {
        "ok": True,
        "data": items,
        "pagination": {
            "total": total,
            "page": page,
            "per_page": per_page,
            "total_pages": (total + per_page - 1) // per_page,
            "has_next": page * per_page < total,
            "has_prev": page > 1,
        },
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }


# ============================================================
# ERROR TAXONOMY
# ============================================================

class ApiException(HTTPException):
    """Custom API exception with error codes"""

    def __init__(
        self,
        status_code: int,
        message: str,
        error_code: str = None,
        details: Dict = None,
    ):
        self.error_code = error_code or f"ERR_{status_code}"
        self.details = details or {}
        super().__init__(status_code=status_code, detail=message)


class ValidationError(ApiException):
    """Bad or missing input."""

    def __init__(self, message: str, details: Dict = None):
        super().__init__(400, message, "VALIDATION_ERROR", details)


class Unauthorized(ApiException):
    def __init__(self, message: str = "Not authenticated"):
        super().__init__(401, message, "UNAUTHORIZED")
        self.headers = {"WWW-Authenticate": "Bearer"}


class NotFound(ApiException):
    def __init__(self, resource: str = "Resource", id: Any = None):
        message = f"{resource} not found" if id is None else f"{resource} '{id}' not found"
        super().__init__(404, message, "NOT_FOUND")


class InsufficientCredits(ApiException):
    """Wallet balance does not cover the cost of a metered action."""

    def __init__(self, required: int, balance: int):
        self.required = required
        self.balance = balance
        super().__init__(
            402,
            f"Insufficient credits: {required} required, {balance} available",
            "INSUFFICIENT_CREDITS",
            {"required": required, "balance": balance},
        )


class ChangeLimitExceeded(ApiException):
    """The per-provider connection change quota is used up."""

    def __init__(self, provider: str):
        super().__init__(
            403,
            f"Change limit reached for {provider}",
            "CHANGE_LIMIT",
            {"provider": provider, "changes_left": 0},
        )


class InvalidState(ApiException):
    """OAuth state missing, expired or already consumed."""

    def __init__(self, message: str = "Invalid or expired OAuth state"):
        super().__init__(400, message, "INVALID_STATE")


class ProviderError(ApiException):
    """An upstream API call failed. 400 when the upstream rejected the request, 502 otherwise."""

    def __init__(self, provider: str, message: str, rejected: bool = False, details: Dict = None):
        self.provider = provider
        super().__init__(
            400 if rejected else 502,
            f"{provider}: {message}",
            "PROVIDER_ERROR",
            {"provider": provider, **(details or {})},
        )


class PersistenceError(ApiException):
    def __init__(self, message: str = "Database write failed"):
        super().__init__(500, message, "PERSISTENCE_ERROR")


# ============================================================
# EXCEPTION HANDLER
# ============================================================

def _error_body(error_code: str, message: str, details: Optional[Dict] = None) -> Dict:
    body = {
        "ok": False,
        "error": error_code,
        "message": message,
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }
    if details:
        body.update(details)
    return body


async def api_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for API errors"""

    if isinstance(exc, ApiException):
        log = api_logger.error if exc.status_code >= 500 else api_logger.warning
        log(
            f"API Error: {exc.detail}",
            status_code=exc.status_code,
            error_code=exc.error_code,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.error_code, exc.detail, exc.details),
            headers=exc.headers,
        )

    api_logger.error(
        f"Unexpected error: {exc}",
        error=exc,
        path=request.url.path,
        traceback=traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500,
        content=_error_body("INTERNAL_ERROR", "An unexpected error occurred"),
    )

