"""
Global error handling middleware.
"""
import logging
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from typing import Callable

from harvest_ledger.domain.errors import LedgerError, LedgerInvariantError


logger = logging.getLogger(__name__)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Global error handling middleware.

    Maps ledger errors to their status code and reason, and hides any other
    exception behind a generic 500.
    """

    async def dispatch(self, request: Request, call_next: Callable):
        """
        Process the request and handle any exceptions.

        Args:
            request: The incoming request
            call_next: The next middleware or route handler

        Returns:
            Response object
        """
        try:
            response = await call_next(request)
            return response

        except LedgerInvariantError as e:
            logger.critical(
                f"Ledger invariant violation: {e.message}",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                }
            )
            return JSONResponse(
                status_code=e.status_code,
                content={
                    "error": "Ledger inconsistency",
                    "reason": e.reason,
                    "detail": e.message,
                }
            )

        except LedgerError as e:
            logger.warning(
                f"Ledger error [{e.reason}]: {e.message}",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": e.status_code,
                }
            )
            return JSONResponse(
                status_code=e.status_code,
                content={
                    "error": type(e).__name__,
                    "reason": e.reason,
                    "detail": e.message,
                }
            )

        except Exception as e:
            logger.exception(
                f"Unhandled exception: {str(e)}",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                }
            )
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": "Internal server error",
                    "reason": "INTERNAL_ERROR",
                    "detail": "An unexpected error occurred",
                }
            )
