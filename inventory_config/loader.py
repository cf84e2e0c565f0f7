"""
Settings Loader (``inventory_config.loader``).

Responsibility
--------------
Builds ``IntegritySettings`` from three layers, lowest precedence first:

    1. dataclass defaults
    2. an optional YAML file (``INVENTORY_CONFIG_FILE``)
    3. environment variables

The single public entry point for runtime settings is
``inventory_config.get_active_settings()``.

Invariants enforced
-------------------
* No insecure defaults: a missing or empty signing or encryption secret
  raises ``MissingSecretError``.
* Unknown YAML keys raise ``ValueError``; a typo never silently falls back
  to a default.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Values that cannot be coerced  -> ``ValueError``.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import yaml

from inventory_kernel.exceptions import MissingSecretError

from inventory_config.settings import IntegritySettings

CONFIG_FILE_ENV = "INVENTORY_CONFIG_FILE"

ENV_VARS: dict[str, str] = {
    "DATABASE_URL": "database_url",
    "AUDIT_SIGNING_SECRET": "audit_signing_secret",
    "BACKUP_ENCRYPTION_KEY": "backup_encryption_secret",
    "BACKUP_STORAGE_PATH": "backup_storage_path",
    "RESTORE_TIMEOUT_SECONDS": "restore_timeout_seconds",
    "BACKUP_LOCK_TIMEOUT_SECONDS": "lock_timeout_seconds",
    "AUDIT_LOCK_TIMEOUT_SECONDS": "audit_lock_timeout_seconds",
    "SCHEDULER_INTERVAL_SECONDS": "scheduler_interval_seconds",
    "BACKUP_MAX_STORAGE_BYTES": "max_storage_bytes",
    "BACKUP_PBKDF2_ITERATIONS": "pbkdf2_iterations",
    "LOG_LEVEL": "log_level",
    "LOG_JSON": "log_json",
}

_SECRET_SOURCES = {
    "audit_signing_secret": "AUDIT_SIGNING_SECRET",
    "backup_encryption_secret": "BACKUP_ENCRYPTION_KEY",
}

_FLOATS = frozenset({
    "restore_timeout_seconds",
    "lock_timeout_seconds",
    "audit_lock_timeout_seconds",
    "scheduler_interval_seconds",
})
_INTS = frozenset({"max_storage_bytes", "pbkdf2_iterations"})
_BOOLS = frozenset({"log_json"})
_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    try:
        if name in _FLOATS:
            return float(value)
        if name in _INTS:
            return None if value == "" else int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name}: expected a number, got {value!r}") from exc
    if name in _BOOLS:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError(f"{name}: expected a boolean, got {value!r}")
    return str(value)


def load_settings(
    config_file: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> IntegritySettings:
    environ = os.environ if environ is None else environ
    known = IntegritySettings.field_names()
    values: dict[str, Any] = {}

    path = config_file or environ.get(CONFIG_FILE_ENV)
    if path:
        data = load_yaml_file(Path(path))
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown settings in {path}: {', '.join(unknown)}")
        values.update(data)

    for env_name, field_name in ENV_VARS.items():
        if env_name in environ:
            values[field_name] = environ[env_name]

    for field_name, env_name in _SECRET_SOURCES.items():
        secret = values.get(field_name)
        if secret is None or not str(secret).strip():
            raise MissingSecretError(env_name)

    return IntegritySettings(**{name: _coerce(name, value) for name, value in values.items()})
