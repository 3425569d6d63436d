"""Errors reported by the API server and by the node controllers."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any, Iterator, Optional


def _causes(err: Optional[BaseException]) -> Iterator[BaseException]:
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__


class ApiError(Exception):
    """An error status returned by the API server."""

    code: int = HTTPStatus.INTERNAL_SERVER_ERROR
    reason: str = "InternalError"

    def __init__(self, message: str = "", *, code: Optional[int] = None, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if reason is not None:
            self.reason = reason


class NotFoundError(ApiError):
    """The requested object does not exist on the API server."""

    code = HTTPStatus.NOT_FOUND
    reason = "NotFound"


class ConflictError(ApiError):
    """The object was modified since it was read; retry with a fresh copy."""

    code = HTTPStatus.CONFLICT
    reason = "Conflict"


def _has_reason(err: Optional[BaseException], reason: str) -> bool:
    return any(isinstance(e, ApiError) and e.reason == reason for e in _causes(err))


def is_not_found(err: Optional[BaseException]) -> bool:
    """Tell whether the error, or one it wraps, is a not-found API error."""
    return _has_reason(err, NotFoundError.reason)


def is_conflict(err: Optional[BaseException]) -> bool:
    """Tell whether the error, or one it wraps, is a conflict API error."""
    return _has_reason(err, ConflictError.reason)


class NodeNotReadyError(Exception):
    """The node is not ready because its last ping failed."""

    def __init__(self, ping_result: Any) -> None:
        self.ping_result = ping_result
        super().__init__(f"New node not ready error: {ping_result.error}")
        self.__cause__ = ping_result.error