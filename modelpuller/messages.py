"""Messages and status codes exchanged with the model runtime."""

from __future__ import annotations

import enum
from dataclasses import dataclass


class StatusCode(enum.IntEnum):
    """gRPC status codes."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


class RpcError(Exception):
    """An error carrying a gRPC status code."""

    def __init__(self, code: StatusCode | int, message: str = "") -> None:
        super().__init__(message)
        self.code = StatusCode(code)
        self.message = message

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"RpcError({self.code.name}, {self.message!r})"


def status_code_of(error: BaseException | None) -> StatusCode:
    """Return the status code of ``error``: OK for none, UNKNOWN when it carries none.

    The chain of causes is searched for an ``RpcError``.
    """
    if error is None:
        return StatusCode.OK
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        if isinstance(current, RpcError):
            return current.code
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return StatusCode.UNKNOWN


class RuntimeStatus(enum.IntEnum):
    """Readiness states reported by a model runtime."""

    STARTING = 0
    READY = 1
    FAILING = 2


@dataclass
class LoadModelRequest:
    model_id: str = ""
    model_path: str = ""
    model_type: str = ""
    model_key: str = ""


@dataclass
class LoadModelResponse:
    size_in_bytes: int = 0


@dataclass
class UnloadModelRequest:
    model_id: str = ""


@dataclass
class UnloadModelResponse:
    pass


@dataclass
class PredictModelSizeRequest:
    model_id: str = ""
    model_path: str = ""
    model_type: str = ""
    model_key: str = ""


@dataclass
class PredictModelSizeResponse:
    size_in_bytes: int = 0


@dataclass
class ModelSizeRequest:
    model_id: str = ""


@dataclass
class ModelSizeResponse:
    size_in_bytes: int = 0


@dataclass
class RuntimeStatusRequest:
    pass


@dataclass
class RuntimeStatusResponse:
    status: RuntimeStatus = RuntimeStatus.STARTING