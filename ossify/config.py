"""Storage configuration.

The configuration is loaded once at startup from (highest precedence first)
explicit overrides, environment variables, and a JSON file in the ossify
config directory, then handed to ``create_backend``.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 8
DEFAULT_OSS_ENDPOINT = "https://oss-cn-hangzhou.aliyuncs.com"
DEFAULT_MINIO_ENDPOINT = "http://localhost:9000"
DEFAULT_FS_ROOT = "./storage"


class Provider(str, Enum):
    OSS = "oss"
    S3 = "s3"
    MINIO = "minio"
    FS = "fs"
    MEMORY = "memory"

    @classmethod
    def parse(cls, value: str) -> Provider:
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ConfigError(
                f"Unsupported storage provider: {value}. "
                "Allowed: 'oss' | 's3' | 'minio' | 'fs' | 'memory'"
            ) from None


@dataclass(frozen=True)
class StorageConfig:
    provider: Provider = Provider.OSS
    bucket: Optional[str] = None
    access_key_id: Optional[str] = None
    access_key_secret: Optional[str] = None
    endpoint: Optional[str] = None
    region: Optional[str] = None
    root_path: Optional[str] = None
    profile: Optional[str] = None
    concurrency: int = DEFAULT_CONCURRENCY
    max_attempts: int = 3

    @property
    def is_s3_compatible(self) -> bool:
        return self.provider in (Provider.OSS, Provider.S3, Provider.MINIO)


# Provider specific fallbacks tried after the generic STORAGE_* variable.
_FALLBACKS: dict[Provider, dict[str, tuple[str, ...]]] = {
    Provider.OSS: {
        "bucket": ("OSS_BUCKET",),
        "access_key_id": ("OSS_ACCESS_KEY_ID",),
        "access_key_secret": ("OSS_ACCESS_KEY_SECRET",),
        "region": ("OSS_REGION",),
        "endpoint": ("OSS_ENDPOINT",),
    },
    Provider.S3: {
        "bucket": ("AWS_S3_BUCKET",),
        "access_key_id": ("AWS_ACCESS_KEY_ID",),
        "access_key_secret": ("AWS_SECRET_ACCESS_KEY",),
        "region": ("AWS_DEFAULT_REGION", "AWS_REGION"),
        "endpoint": (),
    },
    Provider.MINIO: {
        "bucket": ("MINIO_BUCKET",),
        "access_key_id": ("MINIO_ACCESS_KEY",),
        "access_key_secret": ("MINIO_SECRET_KEY",),
        "region": ("MINIO_DEFAULT_REGION",),
        "endpoint": ("MINIO_ENDPOINT",),
    },
}

_ENV_NAMES = {
    "bucket": "STORAGE_BUCKET",
    "access_key_id": "STORAGE_ACCESS_KEY_ID",
    "access_key_secret": "STORAGE_ACCESS_KEY_SECRET",
    "region": "STORAGE_REGION",
    "endpoint": "STORAGE_ENDPOINT",
}


def config_base_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    environ = os.environ if environ is None else environ
    config_home = environ.get("XDG_CONFIG_HOME")
    if config_home:
        base = Path(config_home).expanduser()
    else:
        base = Path.home() / ".config"
    return base / "ossify"


def default_config_path(environ: Optional[Mapping[str, str]] = None) -> Path:
    return config_base_dir(environ) / "config.json"


def read_config_file(path: Path) -> dict[str, object]:
    try:
        payload = json.loads(path.read_text())
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", path, exc)
        return {}
    if not isinstance(payload, dict):
        logger.warning("Ignoring config file %s: expected a JSON object", path)
        return {}
    return payload


def _lookup(
    field_name: str,
    provider: Provider,
    environ: Mapping[str, str],
    file_values: Mapping[str, object],
) -> Optional[str]:
    names = (_ENV_NAMES[field_name],) + _FALLBACKS.get(provider, {}).get(field_name, ())
    for name in names:
        value = environ.get(name)
        if value:
            return value
    value = file_values.get(field_name)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _parse_int(value: object, name: str, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    if parsed < 1:
        raise ConfigError(f"{name} must be a positive integer, got {parsed}")
    return parsed


def load_config(
    environ: Optional[Mapping[str, str]] = None,
    config_path: Optional[Path] = None,
    **overrides: object,
) -> StorageConfig:
    """Load the storage configuration for this process.

    Keyword overrides (for example ``provider="fs"`` from the command line)
    win over the environment, which wins over the config file.
    """
    environ = os.environ if environ is None else environ
    path = config_path or default_config_path(environ)
    file_values = read_config_file(path)

    provider_raw = (
        overrides.pop("provider", None)
        or environ.get("STORAGE_PROVIDER")
        or file_values.get("provider")
        or Provider.OSS.value
    )
    provider = Provider.parse(str(provider_raw))
    concurrency = _parse_int(
        environ.get("OSSIFY_CONCURRENCY") or file_values.get("concurrency"),
        "OSSIFY_CONCURRENCY",
        DEFAULT_CONCURRENCY,
    )

    if provider == Provider.FS:
        root_path = environ.get("STORAGE_ROOT_PATH") or file_values.get("root_path")
        config = StorageConfig(
            provider=provider,
            bucket="local",
            root_path=str(root_path or DEFAULT_FS_ROOT),
            concurrency=concurrency,
        )
    elif provider == Provider.MEMORY:
        config = StorageConfig(provider=provider, bucket="memory", concurrency=concurrency)
    else:
        values = {
            name: _lookup(name, provider, environ, file_values) for name in _ENV_NAMES
        }
        if provider == Provider.OSS and not values["endpoint"]:
            values["endpoint"] = DEFAULT_OSS_ENDPOINT
        if provider == Provider.MINIO and not values["endpoint"]:
            values["endpoint"] = DEFAULT_MINIO_ENDPOINT
        profile = (
            environ.get("STORAGE_PROFILE")
            or environ.get("AWS_PROFILE")
            or file_values.get("profile")
        )
        config = StorageConfig(
            provider=provider,
            profile=str(profile) if profile else None,
            concurrency=concurrency,
            max_attempts=_parse_int(
                environ.get("STORAGE_MAX_ATTEMPTS") or file_values.get("max_attempts"),
                "STORAGE_MAX_ATTEMPTS",
                3,
            ),
            **values,
        )

    overrides = {key: value for key, value in overrides.items() if value is not None}
    if overrides:
        config = replace(config, **overrides)
    validate_config(config)
    return config


def validate_config(config: StorageConfig) -> None:
    if not config.is_s3_compatible:
        return
    if not config.bucket:
        raise ConfigError(
            f"STORAGE_BUCKET environment variable is required for provider "
            f"'{config.provider.value}'"
        )
    # Plain S3 may fall back to the boto3 credential chain (profiles, SSO,
    # instance roles); OSS and MinIO need explicit keys.
    if config.provider == Provider.S3:
        return
    if not config.access_key_id:
        raise ConfigError(
            "STORAGE_ACCESS_KEY_ID environment variable is required for provider "
            f"'{config.provider.value}'"
        )
    if not config.access_key_secret:
        raise ConfigError(
            "STORAGE_ACCESS_KEY_SECRET environment variable is required for provider "
            f"'{config.provider.value}'"
        )
