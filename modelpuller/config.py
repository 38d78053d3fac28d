"""Configuration for the model puller and its gRPC front end."""

from __future__ import annotations

import errno
import json
import logging
import os
import posixpath
import re
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_MAX_SYMLINKS = 255
_INT_PATTERN = re.compile(r"[+-]?\d+")


def get_env_string(name: str, default: str) -> str:
    """Return the environment variable ``name``, or ``default`` when it is unset."""
    return os.environ.get(name, default)


def get_env_int(name: str, default: int) -> int:
    """Return the environment variable ``name`` as an integer, or ``default`` when unset."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    if not _INT_PATTERN.fullmatch(raw):
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}")
    return int(raw)


def _clean_rooted(path: str) -> str:
    """Lexically clean ``path`` as if it were rooted at ``/``."""
    return os.sep + posixpath.normpath(path).lstrip(os.sep)


def secure_join(root: str | os.PathLike[str], unsafe_path: str | os.PathLike[str]) -> str:
    """Join ``unsafe_path`` onto ``root`` so that the result never leaves ``root``.

    ``..`` components and symbolic links found under ``root`` are resolved as
    though ``root`` were the file system root.
    """
    root = os.fspath(root)
    remaining = os.fspath(unsafe_path)
    sep = os.sep
    built = ""
    links = 0

    while remaining:
        if links > _MAX_SYMLINKS:
            raise OSError(errno.ELOOP, "too many levels of symbolic links", os.fspath(unsafe_path))

        component, _, remaining = remaining.partition(sep)
        scoped = _clean_rooted(sep + built + component)
        if scoped == sep:
            built = ""
            continue

        full = os.path.normpath(root + scoped)
        try:
            info = os.lstat(full)
        except FileNotFoundError:
            info = None

        if info is None or not stat.S_ISLNK(info.st_mode):
            built += component + sep
            continue

        links += 1
        target = os.readlink(full)
        if os.path.isabs(target):
            built = ""
        remaining = target + sep + remaining

    return os.path.normpath(root + _clean_rooted(sep + built))


@dataclass
class PullerConfiguration:
    """Where models are stored locally and where storage secrets are mounted."""

    root_model_dir: str = "/models"
    storage_configuration_dir: str = "/storage-config"

    @classmethod
    def from_env(cls) -> PullerConfiguration:
        """Build a configuration from ``ROOT_MODEL_DIR`` and ``STORAGE_CONFIG_DIR``."""
        return cls(
            root_model_dir=get_env_string("ROOT_MODEL_DIR", "/models"),
            storage_configuration_dir=get_env_string("STORAGE_CONFIG_DIR", "/storage-config"),
        )

    def get_storage_configuration(self, storage_key: str) -> dict[str, Any]:
        """Read the JSON storage configuration stored under ``storage_key``.

        Raises ``FileNotFoundError`` when there is no such key, ``OSError`` when
        it cannot be read and ``ValueError`` when it is not a JSON object.
        """
        config_path = Path(secure_join(self.storage_configuration_dir, storage_key))
        logger.debug("Reading storage credentials")

        if not config_path.exists():
            raise FileNotFoundError(f"Storage secretKey not found: {storage_key}")

        try:
            raw = config_path.read_bytes()
        except OSError as exc:
            raise OSError(
                f"Could not read storage configuration from {config_path}: {exc}"
            ) from exc

        try:
            storage_config = json.loads(raw)
        except ValueError as exc:
            raise ValueError(
                f"Could not parse storage configuration json from {config_path}: {exc}"
            ) from exc
        if not isinstance(storage_config, dict):
            raise ValueError(
                f"Could not parse storage configuration json from {config_path}: "
                "expected a JSON object"
            )

        if storage_config.get("type") == "s3" and "default_bucket" in storage_config:
            if "bucket" in storage_config:
                logger.info(
                    "Both bucket and default_bucket params were provided in S3 storage "
                    "config, ignoring default_bucket (bucket=%s, default_bucket=%s)",
                    storage_config["bucket"],
                    storage_config["default_bucket"],
                )
            else:
                storage_config["bucket"] = storage_config["default_bucket"]

        return storage_config


@dataclass
class PullerServerConfiguration:
    """Port of the puller server and the endpoint of the model runtime behind it."""

    port: int = 8084
    model_server_endpoint: str = "port:8085"

    @classmethod
    def from_env(cls) -> PullerServerConfiguration:
        """Build a configuration from ``PORT`` and ``MODEL_SERVER_ENDPOINT``."""
        return cls(
            port=get_env_int("PORT", 8084),
            model_server_endpoint=get_env_string("MODEL_SERVER_ENDPOINT", "port:8085"),
        )