"""The puller front end: pulls models before handing requests to the runtime."""

from __future__ import annotations

import logging
from typing import Protocol

from .config import PullerServerConfiguration
from .messages import (
    LoadModelRequest,
    LoadModelResponse,
    ModelSizeRequest,
    ModelSizeResponse,
    PredictModelSizeRequest,
    PredictModelSizeResponse,
    RpcError,
    RuntimeStatus,
    RuntimeStatusRequest,
    RuntimeStatusResponse,
    StatusCode,
    UnloadModelRequest,
    UnloadModelResponse,
    status_code_of,
)
from .modelstate import ModelStateManager
from .puller import Puller

logger = logging.getLogger(__name__)

PURGE_EXCLUDE_PREFIXES: tuple[str, ...] = ("_",)


class _RuntimeClient(Protocol):
    def load_model(self, request: LoadModelRequest) -> LoadModelResponse: ...

    def unload_model(self, request: UnloadModelRequest) -> UnloadModelResponse: ...

    def predict_model_size(self, request: PredictModelSizeRequest) -> PredictModelSizeResponse: ...

    def model_size(self, request: ModelSizeRequest) -> ModelSizeResponse: ...

    def runtime_status(self, request: RuntimeStatusRequest) -> RuntimeStatusResponse: ...


class PullerServer:
    """Model runtime service that pulls model files before the runtime loads them."""

    def __init__(
        self,
        puller: Puller,
        runtime_client: _RuntimeClient,
        config: PullerServerConfiguration | None = None,
    ) -> None:
        self.puller = puller
        self.runtime_client = runtime_client
        self.config = config if config is not None else PullerServerConfiguration.from_env()
        self._state = ModelStateManager(self)

    def load_model(
        self, request: LoadModelRequest, timeout: float | None = None
    ) -> LoadModelResponse:
        """Load a model, returning once it is fully loaded."""
        logger.info("Enqueuing loading of the model")
        return self._state.load_model(request, timeout)

    def unload_model(
        self, request: UnloadModelRequest, timeout: float | None = None
    ) -> UnloadModelResponse:
        """Unload a model and delete its files; an unknown model is not an error."""
        logger.info("Enqueuing unloading of the model")
        return self._state.unload_model(request, timeout)

    def execute_load_model(self, request: LoadModelRequest) -> LoadModelResponse:
        """Pull the model files, then ask the runtime to load them."""
        logger.info(
            "Loading model (model_id=%s, model_path=%s, model_key=%s, model_type=%s)",
            request.model_id,
            request.model_path,
            request.model_key,
            request.model_type,
        )
        try:
            request = self.puller.process_load_model_request(request)
        except Exception:
            logger.exception("Failed to pull model from storage (model_id=%s)", request.model_id)
            raise

        try:
            return self.runtime_client.load_model(request)
        except Exception as exc:
            logger.exception("Model runtime failed to load model (model_id=%s)", request.model_id)
            raise RpcError(
                status_code_of(exc),
                f"Failed to load model due to model runtime error: {exc}",
            ) from exc

    def execute_unload_model(self, request: UnloadModelRequest) -> UnloadModelResponse:
        """Unload the model from the runtime, then delete its local files."""
        logger.info("Unloading model (model_id=%s)", request.model_id)
        try:
            self.runtime_client.unload_model(request)
        except Exception as exc:
            code = status_code_of(exc)
            if code != StatusCode.NOT_FOUND:
                logger.exception("Failed to unload model from runtime (model_id=%s)", request.model_id)
                raise RpcError(code, "Failed to unload model from runtime") from exc
            logger.info(
                "Unload request for model not found in the runtime (model_id=%s, error=%s)",
                request.model_id,
                exc,
            )

        try:
            self.puller.cleanup_model(request.model_id)
        except Exception as exc:
            raise RpcError(
                status_code_of(exc),
                f"Failed to delete model from local filesystem: {exc}",
            ) from exc
        return UnloadModelResponse()

    def predict_model_size(self, request: PredictModelSizeRequest) -> PredictModelSizeResponse:
        """Ask the runtime for the predicted size of a model not yet loaded."""
        logger.info(
            "Predicting model size (model_id=%s, model_path=%s, model_key=%s, model_type=%s)",
            request.model_id,
            request.model_path,
            request.model_key,
            request.model_type,
        )
        return self.runtime_client.predict_model_size(request)

    def model_size(self, request: ModelSizeRequest) -> ModelSizeResponse:
        """Ask the runtime for the size of a loaded model."""
        logger.info("Getting model size (model_id=%s)", request.model_id)
        return self.runtime_client.model_size(request)

    def runtime_status(self, request: RuntimeStatusRequest) -> RuntimeStatusResponse:
        """Return the runtime's status, unloading all models once it is ready."""
        logger.info("Getting runtime status")
        response = self.runtime_client.runtime_status(request)
        if response.status != RuntimeStatus.READY:
            return response

        logger.info("Unloading all prior loaded models to return to zero state")
        try:
            self.unload_all()
        except Exception:
            logger.exception("Error unloading all models")
            raise
        return response

    def unload_all(self) -> None:
        """Unload every locally stored model except those with excluded prefixes."""
        try:
            model_ids = self.puller.list_models()
        except OSError:
            logger.exception("Unable to list the models for unloading")
            raise

        for model_id in model_ids:
            if model_id.startswith(PURGE_EXCLUDE_PREFIXES):
                logger.info(
                    "Skipping purge because it is excluded from deletion (filename=%s)", model_id
                )
                continue
            try:
                self.runtime_client.unload_model(UnloadModelRequest(model_id=model_id))
            except Exception as exc:
                if status_code_of(exc) != StatusCode.NOT_FOUND:
                    logger.exception("Error requesting unload of model (model_id=%s)", model_id)
                    raise
            self.puller.cleanup_model(model_id)