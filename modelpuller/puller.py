"""Pulling model files from storage and rewriting load requests to point at them."""

from __future__ import annotations

import json
import logging
import os
import shutil
import stat
from dataclasses import dataclass, field
from typing import Any, Protocol

from .config import PullerConfiguration, secure_join
from .dotpath import DotpathError, apply_parameter_overrides
from .messages import LoadModelRequest, RpcError, StatusCode, status_code_of

logger = logging.getLogger(__name__)

PARAMETER_KEY_TYPE = "type"
DEFAULT_STORAGE_KEY = "default"

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

_JSON_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


class PullError(RpcError):
    """Preparing or pulling a model failed."""

    def __init__(self, message: str, code: StatusCode | int = StatusCode.UNKNOWN) -> None:
        super().__init__(code, message)


@dataclass(frozen=True)
class Target:
    """One remote path to fetch and the local name to store it under."""

    remote_path: str
    local_path: str


@dataclass
class RepositoryConfig:
    """The kind of storage to pull from and its parameters."""

    storage_type: str
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class PullCommand:
    """Everything a pull manager needs to fetch a model into a directory."""

    repository_config: RepositoryConfig
    directory: str
    targets: list[Target] = field(default_factory=list)


class _PullManager(Protocol):
    def pull(self, command: PullCommand) -> None: ...


def _normalize(value: Any) -> Any:
    """Sort nested mapping keys and write integral floats as integers."""
    if isinstance(value, dict):
        return {key: _normalize(value[key]) for key in sorted(value)}
    if isinstance(value, list):
        return [_normalize(item) for item in value]
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e21:
        return int(value)
    return value


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string, got {value!r}")
    return value


@dataclass
class ModelKeyInfo:
    """The JSON document carried in the model key of a load request."""

    model_type: Any = None
    bucket: str = ""
    disk_size_bytes: int = 0
    schema_path: str | None = None
    storage_key: str | None = None
    storage_params: dict[str, str] | None = None

    @classmethod
    def from_json(cls, text: str) -> ModelKeyInfo:
        """Parse a model key; raise ``ValueError`` when it is malformed."""
        data = json.loads(text)
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("model key must be a JSON object")

        disk_size = data.get("disk_size_bytes")
        if disk_size is None:
            disk_size = 0
        elif isinstance(disk_size, bool) or not isinstance(disk_size, int):
            raise ValueError(f"field 'disk_size_bytes' must be an integer, got {disk_size!r}")
        elif not _INT64_MIN <= disk_size <= _INT64_MAX:
            raise ValueError(f"field 'disk_size_bytes' is out of range: {disk_size}")

        raw_params = data.get("storage_params")
        storage_params: dict[str, str] | None
        if raw_params is None:
            storage_params = None
        elif isinstance(raw_params, dict):
            storage_params = {}
            for key, value in raw_params.items():
                if value is None:
                    value = ""
                elif not isinstance(value, str):
                    raise ValueError(
                        f"storage parameter {key!r} must be a string, got {value!r}"
                    )
                storage_params[key] = value
        else:
            raise ValueError(f"field 'storage_params' must be an object, got {raw_params!r}")

        return cls(
            model_type=data.get("model_type"),
            bucket=_optional_str(data, "bucket") or "",
            disk_size_bytes=disk_size,
            schema_path=_optional_str(data, "schema_path"),
            storage_key=_optional_str(data, "storage_key"),
            storage_params=storage_params,
        )

    def to_json(self) -> str:
        """Serialise compactly, leaving out empty optional fields."""
        document: dict[str, Any] = {}
        if self.model_type is not None:
            document["model_type"] = _normalize(self.model_type)
        if self.bucket:
            document["bucket"] = self.bucket
        document["disk_size_bytes"] = self.disk_size_bytes
        if self.schema_path is not None:
            document["schema_path"] = self.schema_path
        if self.storage_key is not None:
            document["storage_key"] = self.storage_key
        if self.storage_params:
            document["storage_params"] = _normalize(self.storage_params)

        text = json.dumps(document, separators=(",", ":"), ensure_ascii=False)
        for char, escape in _JSON_ESCAPES.items():
            text = text.replace(char, escape)
        return text


def _base_name(path: str) -> str:
    """Last element of ``path``: ``.`` for an empty path, the separator for a root."""
    if not path:
        return "."
    stripped = path.rstrip(os.sep)
    if not stripped:
        return os.sep
    return stripped.rsplit(os.sep, 1)[-1]


class Puller:
    """Fetches models into a local directory tree and tracks what is there."""

    def __init__(
        self,
        config: PullerConfiguration | None,
        pull_manager: _PullManager,
    ) -> None:
        self.config = config if config is not None else PullerConfiguration.from_env()
        self.pull_manager = pull_manager
        logger.info("Initializing Puller (dir=%s)", self.config.root_model_dir)

    def _storage_config_for(self, model_key: ModelKeyInfo) -> dict[str, Any]:
        if model_key.storage_key is None:
            storage_type = (model_key.storage_params or {}).get(PARAMETER_KEY_TYPE, "")
            key = f"{DEFAULT_STORAGE_KEY}_{storage_type}" if storage_type else DEFAULT_STORAGE_KEY
            try:
                return self.config.get_storage_configuration(key)
            except (OSError, ValueError):
                # fall back to the request parameters alone
                return {}
        try:
            return self.config.get_storage_configuration(model_key.storage_key)
        except (OSError, ValueError) as exc:
            raise PullError(
                f"Did not find storage config for key {model_key.storage_key}: {exc}"
            ) from exc

    def process_load_model_request(self, request: LoadModelRequest) -> LoadModelRequest:
        """Pull the model of ``request`` and rewrite it to refer to the local copy.

        The request is changed in place and returned: the model path becomes a
        local path, the model key gets a local schema path and the size of the
        model on disk, and its storage parameters are removed.
        """
        try:
            model_key = ModelKeyInfo.from_json(request.model_key)
        except ValueError as exc:
            raise PullError(
                "Invalid modelKey in LoadModelRequest. "
                f"Error processing JSON '{request.model_key}': {exc}"
            ) from exc

        storage_config = self._storage_config_for(model_key)

        if model_key.bucket and storage_config.get("bucket") is not None:
            logger.info(
                'Warning: use of ModelKey["bucket"] is deprecated, '
                'use ModelKey["storage_params"]["bucket"] instead'
            )
            storage_config["bucket"] = model_key.bucket

        try:
            apply_parameter_overrides(storage_config, model_key.storage_params or {})
        except DotpathError as exc:
            raise PullError(
                "Unable to merge storage parameters from the storage config "
                f"and the Predictor Storage field: {exc}"
            ) from exc

        storage_type = storage_config.get(PARAMETER_KEY_TYPE)
        if not isinstance(storage_type, str):
            raise PullError("Predictor Storage field missing")

        model_filename = _base_name(request.model_path)
        if model_filename in (".", os.sep):
            model_filename = "_model"
        targets = [Target(remote_path=request.model_path, local_path=model_filename)]

        schema_filename = ""
        if model_key.schema_path is not None:
            schema_filename = _base_name(model_key.schema_path)
            if schema_filename == model_filename:
                schema_filename = "_schema.json"
            targets.append(Target(remote_path=model_key.schema_path, local_path=schema_filename))

        root = self.config.root_model_dir
        try:
            model_dir = secure_join(root, request.model_id)
        except OSError as exc:
            raise PullError(
                f"Error joining paths '{root}' and '{request.model_id}': {exc}"
            ) from exc

        command = PullCommand(
            repository_config=RepositoryConfig(storage_type, storage_config),
            directory=model_dir,
            targets=targets,
        )
        try:
            self.pull_manager.pull(command)
        except Exception as exc:
            raise PullError(
                f"Failed to pull model from storage due to error: {exc}",
                code=status_code_of(exc),
            ) from exc

        # A plain join: the model may be a symlink to a mounted volume outside the root.
        model_full_path = os.path.normpath(os.path.join(model_dir, model_filename))
        request.model_path = model_full_path

        if model_key.schema_path is not None:
            try:
                model_key.schema_path = secure_join(model_dir, schema_filename)
            except OSError as exc:
                raise PullError(
                    f"Error joining paths '{model_dir}' and '{schema_filename}': {exc}"
                ) from exc

        try:
            size = self.model_disk_size(model_full_path)
        except OSError:
            logger.exception(
                "Model disk size will not be included in the LoadModelRequest (model_key=%s)",
                model_key,
            )
        else:
            logger.info(
                "Calculated disk size (modelFullPath=%s, disk_size=%d)", model_full_path, size
            )
            model_key.disk_size_bytes = size

        model_key.storage_key = None
        model_key.storage_params = None
        model_key.bucket = ""
        request.model_key = model_key.to_json()
        return request

    def model_disk_size(self, model_path: str) -> int:
        """Total size in bytes of the files under ``model_path``, following symlinks."""
        try:
            return self._disk_size(model_path)
        except OSError as exc:
            raise OSError(exc.errno, f"Error computing model's disk size: {exc}") from exc

    def _disk_size(self, path: str) -> int:
        info = os.lstat(path)
        if stat.S_ISLNK(info.st_mode):
            try:
                target = os.readlink(path)
            except OSError:
                logger.exception("Failed to resolve symlink path (path=%s)", path)
                return 0
            return self._disk_size(os.path.join(os.path.dirname(path), target))
        if stat.S_ISDIR(info.st_mode):
            return sum(
                self._disk_size(os.path.join(path, name)) for name in sorted(os.listdir(path))
            )
        return info.st_size

    def cleanup_model(self, model_id: str) -> None:
        """Delete the local files of ``model_id``; a missing model is not an error."""
        path = secure_join(self.config.root_model_dir, model_id)
        try:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            elif os.path.lexists(path):
                os.remove(path)
        except OSError as exc:
            logger.exception(
                "Model unload failed to delete files from the local filesystem (local_dir=%s)",
                path,
            )
            raise PullError(f"Failed to delete model from local filesystem: {exc}") from exc

    def clear_local_model_storage(self, exclude: str) -> None:
        """Remove everything in the model root except the entry named ``exclude``."""
        with os.scandir(self.config.root_model_dir) as entries:
            doomed = [entry for entry in entries if entry.name != exclude]
        for entry in doomed:
            if entry.is_dir(follow_symlinks=False):
                shutil.rmtree(entry.path)
            else:
                os.remove(entry.path)

    def list_models(self) -> list[str]:
        """Names of the entries in the model root, sorted."""
        return sorted(os.listdir(self.config.root_model_dir))