"""
Mapping from engine errors to HTTP responses.
"""

from __future__ import annotations

from fastapi import HTTPException

from models.errors import (
    ConcurrencyConflictError,
    DuplicateRequestError,
    ExposureError,
    InvalidTransitionError,
    RateNotFoundError,
    SelfAuthorisationError,
    SettlementNotFoundError,
    StaleVersionError,
    ValidationError,
)

_STATUS: list[tuple[type[ExposureError], int]] = [
    (ValidationError,          422),
    (StaleVersionError,        409),
    (RateNotFoundError,        424),
    (DuplicateRequestError,    409),
    (InvalidTransitionError,   409),
    (SelfAuthorisationError,   403),
    (SettlementNotFoundError,  404),
    (ConcurrencyConflictError, 503),
]


def to_http(exc: ExposureError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail={"errors": exc.errors})
    for cls, status in _STATUS:
        if isinstance(exc, cls):
            return HTTPException(status_code=status, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
