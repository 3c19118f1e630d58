"""
Translation of core errors into HTTP responses.
"""

import logging

from fastapi import HTTPException

from domain.errors import (
    ConcurrentTransitionError,
    CycleDetectedError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ReparentingError,
)

logger = logging.getLogger(__name__)


def to_http_exception(exc: Exception, action: str) -> HTTPException:
    """
    Map an exception raised by a service call to an HTTPException.

    Args:
        exc: The exception raised by the service layer
        action: Short description used in the 500 detail, e.g. "transition deal"
    """
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(
            status_code=409,
            detail={
                "error": "invalid_transition",
                "message": str(exc),
                "current_stage": exc.current_stage,
                "attempted_stage": exc.attempted_stage,
            },
        )
    if isinstance(exc, ConcurrentTransitionError):
        return HTTPException(
            status_code=409,
            detail={"error": "concurrent_transition", "message": str(exc)},
        )
    if isinstance(exc, InvalidStateError):
        return HTTPException(
            status_code=409,
            detail={
                "error": "invalid_state",
                "message": str(exc),
                "commission_id": str(exc.commission_id),
                "status": exc.status,
            },
        )
    if isinstance(exc, ReparentingError):
        return HTTPException(status_code=409, detail={"error": "reparenting", "message": str(exc)})
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, CycleDetectedError):
        return HTTPException(
            status_code=500,
            detail={
                "error": "data integrity alert",
                "message": str(exc),
                "cycle_path": [str(p) for p in exc.path],
            },
        )
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))

    logger.exception(f"Failed to {action}")
    return HTTPException(status_code=500, detail=f"Failed to {action}: {str(exc)}")


__all__ = ["to_http_exception"]
