"""
inventory_config -- single public entrypoint for runtime settings.

Responsibility:
    Provides the ONLY way to obtain settings at runtime through
    ``get_active_settings()``.  No other component reads configuration
    files or environment variables directly.

Architecture position:
    Sits beside ``inventory_kernel``; ``inventory_services.bootstrap`` is
    its only runtime caller.  The kernel MUST NEVER import from
    ``inventory_config``.

Failure modes:
    - ``MissingSecretError`` -- signing or encryption secret absent.
    - ``ValueError`` -- unknown YAML keys or uncoercible values.
    - ``FileNotFoundError`` -- ``INVENTORY_CONFIG_FILE`` points nowhere.

Audit relevance:
    Every successful call emits an ``INVENTORY_CONFIG_TRACE`` log entry with
    the settings fingerprint (secrets excluded), tying a process run to the
    exact configuration it started with.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping

from inventory_config.loader import load_settings
from inventory_config.settings import IntegritySettings

_logger = logging.getLogger("inventory_kernel.config")


def get_active_settings(
    config_file: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> IntegritySettings:
    """The ONLY public settings entrypoint."""
    settings = load_settings(config_file=config_file, environ=environ)
    _logger.info(
        "INVENTORY_CONFIG_TRACE",
        extra={
            "fingerprint": settings.fingerprint(),
            "backup_storage_path": settings.backup_storage_path,
            "restore_timeout_seconds": settings.restore_timeout_seconds,
        },
    )
    return settings


__all__ = ["IntegritySettings", "get_active_settings", "load_settings"]
