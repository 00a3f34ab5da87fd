# medflag/routers/errors.py
from fastapi import HTTPException, status

from ..exceptions import (
    AlreadyResolvedError, AuditIntegrityError, ConcurrencyConflictError, FlaggingError,
    GDPRComplianceError, NotFoundError, StoreUnavailableError, ValidationError
)

STATUS_BY_ERROR = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (GDPRComplianceError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AlreadyResolvedError, status.HTTP_409_CONFLICT),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT),
    (AuditIntegrityError, status.HTTP_409_CONFLICT),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def http_error(error: FlaggingError) -> HTTPException:
    """Map an engine error onto the HTTP status the API promises for it."""
    for error_class, status_code in STATUS_BY_ERROR:
        if isinstance(error, error_class):
            detail = str(error)
            if isinstance(error, GDPRComplianceError) and error.errors:
                detail = {"message": str(error), "errors": error.errors}
            return HTTPException(status_code=status_code, detail=detail)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
