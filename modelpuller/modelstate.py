"""Serialising load and unload requests per model.

Requests for the same model run one after another in the order they were
submitted; requests for different models run concurrently.
"""

from __future__ import annotations

import concurrent.futures
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Protocol

from .messages import (
    LoadModelRequest,
    LoadModelResponse,
    UnloadModelRequest,
    UnloadModelResponse,
)

logger = logging.getLogger(__name__)

STATE_MANAGER_CHANNEL_LENGTH = 25


class _Handler(Protocol):
    def execute_load_model(self, request: LoadModelRequest) -> LoadModelResponse: ...

    def execute_unload_model(self, request: UnloadModelRequest) -> UnloadModelResponse: ...


@dataclass
class _Pending:
    request: Any
    future: concurrent.futures.Future


class _ModelWorker:
    """The queue of one model and the number of its requests not yet answered."""

    def __init__(self) -> None:
        self.pending: queue.SimpleQueue[_Pending] = queue.SimpleQueue()
        self.ref_count = 0


class ModelStateManager:
    """Runs the requests of each model in order on a thread of its own."""

    def __init__(self, handler: _Handler) -> None:
        self.handler = handler
        self._lock = threading.Lock()
        self._workers: dict[str, _ModelWorker] = {}

    def submit_request(self, request: Any, timeout: float | None = None) -> Any:
        """Queue ``request`` for its model and wait for the answer.

        Raises ``RuntimeError`` when too many requests for the model are queued
        and ``TimeoutError`` when no answer came within ``timeout`` seconds; the
        request is still carried out in that case.
        """
        model_id = request.model_id
        future: concurrent.futures.Future = concurrent.futures.Future()
        with self._lock:
            worker = self._workers.get(model_id)
            if worker is None:
                worker = _ModelWorker()
                self._workers[model_id] = worker
                threading.Thread(
                    target=self._run,
                    args=(model_id, worker),
                    name=f"model-{model_id}",
                    daemon=True,
                ).start()
            elif worker.ref_count >= STATE_MANAGER_CHANNEL_LENGTH:
                raise RuntimeError("Unable to send load/unload model request")
            worker.ref_count += 1
            worker.pending.put(_Pending(request, future))

        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError:
            raise TimeoutError("Context cancelled while waiting for response") from None

    def load_model(
        self, request: LoadModelRequest, timeout: float | None = None
    ) -> LoadModelResponse:
        """Queue a load request and return the runtime's response."""
        return self.submit_request(request, timeout)

    def unload_model(
        self, request: UnloadModelRequest, timeout: float | None = None
    ) -> UnloadModelResponse:
        """Queue an unload request and return the runtime's response."""
        return self.submit_request(request, timeout)

    def active_models(self) -> list[str]:
        """Ids of the models with requests queued or running, sorted."""
        with self._lock:
            return sorted(self._workers)

    def _dispatch(self, request: Any) -> Any:
        if isinstance(request, LoadModelRequest):
            return self.handler.execute_load_model(request)
        if isinstance(request, UnloadModelRequest):
            return self.handler.execute_unload_model(request)
        raise TypeError(f"unrecognized request type: {type(request).__name__}")

    def _run(self, model_id: str, worker: _ModelWorker) -> None:
        while True:
            item = worker.pending.get()
            result: Any = None
            error: BaseException | None = None
            try:
                result = self._dispatch(item.request)
            except Exception as exc:
                error = exc

            with self._lock:
                worker.ref_count -= 1
                finished = worker.ref_count <= 0
                if finished and self._workers.get(model_id) is worker:
                    del self._workers[model_id]

            if error is not None:
                item.future.set_exception(error)
            else:
                item.future.set_result(result)

            if finished:
                return