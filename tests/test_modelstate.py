import threading
import time

import pytest

from modelpuller.messages import (
    LoadModelRequest,
    LoadModelResponse,
    ModelSizeRequest,
    UnloadModelRequest,
    UnloadModelResponse,
)
from modelpuller.modelstate import STATE_MANAGER_CHANNEL_LENGTH, ModelStateManager


class CountingHandler:
    def __init__(self):
        self.loaded = 0
        self.unloaded = 0

    def execute_load_model(self, request):
        self.loaded += 1
        return LoadModelResponse(size_in_bytes=7)

    def execute_unload_model(self, request):
        self.unloaded += 1
        return UnloadModelResponse()


class FailingHandler:
    def execute_load_model(self, request):
        time.sleep(0.05)
        raise RuntimeError("failed load")

    def execute_unload_model(self, request):
        raise RuntimeError("failed unload")


class BlockingHandler:
    def __init__(self):
        self.release = threading.Event()
        self.loaded = 0
        self._lock = threading.Lock()

    def execute_load_model(self, request):
        self.release.wait(5)
        with self._lock:
            self.loaded += 1
        return LoadModelResponse()

    def execute_unload_model(self, request):
        return UnloadModelResponse()


def _wait_until_idle(manager, deadline=2.0):
    end = time.monotonic() + deadline
    while manager.active_models() and time.monotonic() < end:
        time.sleep(0.01)
    return manager.active_models()


def test_load_then_unload():
    handler = CountingHandler()
    manager = ModelStateManager(handler)

    response = manager.load_model(LoadModelRequest(model_id="model-id"))
    assert response == LoadModelResponse(size_in_bytes=7)
    assert handler.loaded == 1
    assert handler.unloaded == 0
    assert manager.active_models() == []

    response = manager.unload_model(UnloadModelRequest(model_id="model-id"))
    assert response == UnloadModelResponse()
    assert handler.unloaded == 1
    assert manager.active_models() == []


def test_errors_are_raised():
    manager = ModelStateManager(FailingHandler())

    with pytest.raises(RuntimeError, match="failed load"):
        manager.load_model(LoadModelRequest(model_id="model-id"))

    with pytest.raises(RuntimeError, match="failed unload"):
        manager.unload_model(UnloadModelRequest(model_id="model-id"))


def test_timeout_while_waiting():
    manager = ModelStateManager(FailingHandler())
    with pytest.raises(TimeoutError, match="Context cancelled"):
        manager.load_model(LoadModelRequest(model_id="model-id"), timeout=0.001)
    assert _wait_until_idle(manager) == []


def test_unrecognized_request_type():
    manager = ModelStateManager(CountingHandler())
    with pytest.raises(TypeError, match="unrecognized request type: ModelSizeRequest"):
        manager.submit_request(ModelSizeRequest(model_id="m"))


def test_requests_for_same_model_run_in_order():
    lock = threading.Lock()
    state = {"running": 0, "max": 0, "order": []}

    class Handler:
        def execute_load_model(self, request):
            with lock:
                state["running"] += 1
                state["max"] = max(state["max"], state["running"])
            time.sleep(0.01)
            with lock:
                state["running"] -= 1
                state["order"].append(request.model_path)
            return LoadModelResponse()

        def execute_unload_model(self, request):
            return UnloadModelResponse()

    manager = ModelStateManager(Handler())
    threads = [
        threading.Thread(
            target=manager.load_model,
            args=(LoadModelRequest(model_id="same", model_path=str(i)),),
        )
        for i in range(5)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert state["max"] == 1
    assert sorted(state["order"]) == ["0", "1", "2", "3", "4"]
    assert manager.active_models() == []


def test_different_models_run_concurrently():
    b_started = threading.Event()
    seen = {}
    results = {}

    class Handler:
        def execute_load_model(self, request):
            if request.model_id == "b":
                b_started.set()
                return LoadModelResponse(size_in_bytes=2)
            seen["a_saw_b"] = b_started.wait(2)
            return LoadModelResponse(size_in_bytes=1)

        def execute_unload_model(self, request):
            return UnloadModelResponse()

    manager = ModelStateManager(Handler())

    def load_a():
        results["a"] = manager.load_model(LoadModelRequest(model_id="a"))

    thread_a = threading.Thread(target=load_a)
    thread_a.start()
    results["b"] = manager.load_model(LoadModelRequest(model_id="b"))
    thread_a.join()

    assert seen["a_saw_b"] is True
    assert results["a"] == LoadModelResponse(size_in_bytes=1)
    assert results["b"] == LoadModelResponse(size_in_bytes=2)
    assert _wait_until_idle(manager) == []


def test_active_models_while_running():
    handler = BlockingHandler()
    manager = ModelStateManager(handler)
    with pytest.raises(TimeoutError):
        manager.load_model(LoadModelRequest(model_id="m"), timeout=0.01)
    assert manager.active_models() == ["m"]
    handler.release.set()
    assert _wait_until_idle(manager) == []
    assert handler.loaded == 1


def test_too_many_queued_requests_are_rejected():
    handler = BlockingHandler()
    manager = ModelStateManager(handler)
    for _ in range(STATE_MANAGER_CHANNEL_LENGTH):
        with pytest.raises(TimeoutError):
            manager.load_model(LoadModelRequest(model_id="m"), timeout=0.001)

    with pytest.raises(RuntimeError, match="Unable to send load/unload model request"):
        manager.load_model(LoadModelRequest(model_id="m"))

    handler.release.set()
    assert _wait_until_idle(manager, deadline=5.0) == []
    assert handler.loaded == STATE_MANAGER_CHANNEL_LENGTH