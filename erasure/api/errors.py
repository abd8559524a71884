from fastapi import HTTPException, status

from erasure.core.errors import (
    IdempotencyUnavailableError,
    MissingKeyMaterialError,
    NoEvidenceError,
    UnsupportedAlgorithmError,
)
from erasure.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

_STATUS_BY_ERROR: tuple[tuple[tuple[type[Exception], ...], int], ...] = (
    ((RepositoryUnavailableError, IdempotencyUnavailableError), status.HTTP_503_SERVICE_UNAVAILABLE),
    ((RepositoryNotFoundError,), status.HTTP_404_NOT_FOUND),
    ((RepositoryConflictError, NoEvidenceError), status.HTTP_409_CONFLICT),
    ((RepositoryValidationError,), status.HTTP_422_UNPROCESSABLE_ENTITY),
    ((UnsupportedAlgorithmError, MissingKeyMaterialError), status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def http_error(exc: Exception) -> HTTPException:
    for error_types, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_types):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal error")
