from http import HTTPStatus
from types import SimpleNamespace

import pytest

from kubenode.errors import (
    ApiError,
    ConflictError,
    NodeNotReadyError,
    NotFoundError,
    is_conflict,
    is_not_found,
)


def test_not_found_is_detected():
    assert is_not_found(NotFoundError("missing")) is True
    assert is_conflict(NotFoundError("missing")) is False


def test_conflict_is_detected():
    assert is_conflict(ConflictError("stale")) is True
    assert is_not_found(ConflictError("stale")) is False


def test_none_and_plain_errors_are_neither():
    assert is_not_found(None) is False
    assert is_conflict(None) is False
    assert is_not_found(ValueError("x")) is False
    assert is_conflict(RuntimeError("x")) is False


def test_wrapped_errors_are_detected():
    with pytest.raises(RuntimeError) as info:
        try:
            raise NotFoundError("missing")
        except NotFoundError as exc:
            raise RuntimeError("outer") from exc
    assert is_not_found(info.value) is True
    assert is_conflict(info.value) is False


def test_status_codes():
    assert NotFoundError("a").code == HTTPStatus.NOT_FOUND
    assert ConflictError("a").code == HTTPStatus.CONFLICT
    assert ApiError("a").code == HTTPStatus.INTERNAL_SERVER_ERROR


def test_api_error_with_explicit_reason():
    err = ApiError("custom", reason=NotFoundError.reason)
    assert is_not_found(err) is True
    assert err.message == "custom"


def test_node_not_ready_error_wraps_ping_error():
    cause = ValueError("boom")
    err = NodeNotReadyError(SimpleNamespace(error=cause))
    assert str(err) == "New node not ready error: boom"
    assert err.__cause__ is cause
    assert isinstance(NodeNotReadyError(SimpleNamespace(error=None)), NodeNotReadyError)