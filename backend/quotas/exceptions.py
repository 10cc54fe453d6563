"""
Quota error taxonomy and the API exception handler.

The quota engines raise these exceptions; because they are DRF
``APIException`` subclasses the internal quota API maps them to HTTP
responses without extra translation. Callers of ``reserve`` must abort their
enclosing write on ``QuotaNotProvisioned`` or ``QuotaExceeded``.
``ConcurrencyConflict`` only escapes the optimistic engine once its retry
budget is spent.
"""

import logging
from typing import Any, Dict, Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

from .constants import (
    ERROR_CONCURRENCY_CONFLICT,
    ERROR_CONCURRENCY_CONFLICT_DETAIL,
    ERROR_ORG_NOT_PROVISIONED,
    ERROR_PROJECT_NOT_PROVISIONED,
    ERROR_QUOTA_EXCEEDED,
    ERROR_QUOTA_EXCEEDED_DETAIL,
    ERROR_QUOTA_NOT_PROVISIONED,
    SCOPE_ORGANISATION,
    SCOPE_PROJECT,
)

logger = logging.getLogger(__name__)


class QuotaError(APIException):
    """Base class for every error raised by the quota engines."""

    retryable = False

    def to_dict(self) -> Dict[str, Any]:
        return {'error': self.default_detail, 'detail': str(self.detail), 'code': self.default_code}


class QuotaNotProvisioned(QuotaError):
    """No ledger row exists for the requested organisation or project."""
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = ERROR_QUOTA_NOT_PROVISIONED
    default_code = 'quota_not_provisioned'

    def __init__(self, org_id: int, project_id: Optional[int] = None,
                 scope: str = SCOPE_PROJECT, message: Optional[str] = None):
        self.org_id = org_id
        self.project_id = project_id
        self.scope = scope
        if message is None:
            if scope == SCOPE_ORGANISATION:
                message = ERROR_ORG_NOT_PROVISIONED.format(org_id=org_id)
            else:
                message = ERROR_PROJECT_NOT_PROVISIONED.format(org_id=org_id, project_id=project_id)
        super().__init__(detail=message)


class QuotaExceeded(QuotaError):
    """
    Capacity check failed at project or organisation scope.

    Attributes:
        scope: ``'project'`` or ``'organisation'``
        remaining_bytes: Capacity left on the row that rejected the request
        requested_bytes: Size of the rejected reservation
    """
    status_code = status.HTTP_507_INSUFFICIENT_STORAGE
    default_detail = ERROR_QUOTA_EXCEEDED
    default_code = 'storage_quota_exceeded'

    def __init__(self, scope: str, org_id: int, project_id: Optional[int],
                 requested_bytes: int, remaining_bytes: int):
        self.scope = scope
        self.org_id = org_id
        self.project_id = project_id
        self.requested_bytes = requested_bytes
        self.remaining_bytes = remaining_bytes
        super().__init__(detail=ERROR_QUOTA_EXCEEDED_DETAIL.format(
            scope=scope.capitalize(),
            remaining=remaining_bytes,
            requested=requested_bytes,
        ))

    def to_dict(self) -> Dict[str, Any]:
        return {
            **super().to_dict(),
            'scope': self.scope,
            'remaining_bytes': self.remaining_bytes,
            'requested_bytes': self.requested_bytes,
        }


class ConcurrencyConflict(QuotaError):
    """Optimistic version check failed; transient, distinct from QuotaExceeded."""
    status_code = status.HTTP_409_CONFLICT
    default_detail = ERROR_CONCURRENCY_CONFLICT
    default_code = 'quota_concurrency_conflict'
    retryable = True

    def __init__(self, attempts: int = 1, message: Optional[str] = None):
        self.attempts = attempts
        super().__init__(detail=message or ERROR_CONCURRENCY_CONFLICT_DETAIL.format(attempts=attempts))


def custom_exception_handler(exc: Exception, context: Dict[str, Any]) -> Optional[Response]:
    """
    Custom exception handler that provides consistent error responses.

    Wraps DRF's default handler, renders quota errors with their diagnostic
    fields, and converts Django's ValidationError and ValueError.

    Example Response Format:
        {
            "error": "Storage Quota Exceeded",
            "detail": "Project storage quota exceeded. Available: 0 bytes, required: 1 bytes",
            "code": "storage_quota_exceeded",
            "scope": "project",
            "remaining_bytes": 0,
            "requested_bytes": 1
        }
    """
    if isinstance(exc, QuotaError):
        log_level = logging.WARNING if exc.status_code < 500 else logging.ERROR
        logger.log(log_level, f"{exc.__class__.__name__}: {exc.detail} (Status: {exc.status_code})")
        return Response(exc.to_dict(), status=exc.status_code)

    response = drf_exception_handler(exc, context)

    if response is None:
        if isinstance(exc, DjangoValidationError):
            logger.warning(f"Validation error: {str(exc)}")
            if hasattr(exc, 'message_dict'):
                error_data = exc.message_dict
            else:
                error_data = {'error': exc.messages}
            return Response(error_data, status=status.HTTP_400_BAD_REQUEST)

        elif isinstance(exc, ValueError):
            logger.warning(f"Invalid value: {str(exc)}")
            return Response({'error': str(exc)}, status=status.HTTP_400_BAD_REQUEST)

        else:
            logger.error(
                f"Unhandled exception: {type(exc).__name__}: {str(exc)}",
                exc_info=True
            )
            # Don't expose internal errors to client
            return Response(
                {'error': 'Internal server error. Please try again later.'},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

    log_level = logging.WARNING if response.status_code < 500 else logging.ERROR
    logger.log(
        log_level,
        f"{exc.__class__.__name__}: {str(exc)} "
        f"(Status: {response.status_code})"
    )
    return response
