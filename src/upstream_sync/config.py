"""Effective run configuration.

Resolves the ``sync`` section from CLI overrides, environment variables,
YAML config and built-in defaults, then validates it through the pydantic
schema.

Precedence (highest to lowest):
    CLI args > Environment variables (incl. .env) > YAML config > defaults

Environment variables:
    UPSTREAM_SYNC_REPO: Upstream repository URL
    UPSTREAM_SYNC_BRANCH: Upstream branch (default: main)
    UPSTREAM_SYNC_TARGET_BRANCH: Local target branch (default: main)
    UPSTREAM_SYNC_DIRS: Comma-separated directories to sync
    UPSTREAM_SYNC_MESSAGE: Commit message
    UPSTREAM_SYNC_CONCURRENCY: Worker pool size
    UPSTREAM_SYNC_TOKEN: Token credential (enables ``token`` auth)
"""

from __future__ import annotations

import logging
import os
from typing import Any

from pydantic import ValidationError

from upstream_sync.config_schema import SyncConfig, UnifiedConfig, build_config
from upstream_sync.errors import ConfigError

logger = logging.getLogger(__name__)

_ENV_STRING_FIELDS: dict[str, str] = {
    "UPSTREAM_SYNC_REPO": "upstream_repo",
    "UPSTREAM_SYNC_BRANCH": "upstream_branch",
    "UPSTREAM_SYNC_TARGET_BRANCH": "target_branch",
    "UPSTREAM_SYNC_MESSAGE": "commit_message",
}


def _env_layer() -> dict[str, Any]:
    """Collect sync fields set through the environment."""
    layer: dict[str, Any] = {}
    for env_key, field in _ENV_STRING_FIELDS.items():
        value = os.getenv(env_key)
        if value:
            layer[field] = value.strip()

    dirs = os.getenv("UPSTREAM_SYNC_DIRS")
    if dirs:
        layer["mappings"] = [d.strip() for d in dirs.split(",") if d.strip()]

    concurrency = os.getenv("UPSTREAM_SYNC_CONCURRENCY")
    if concurrency:
        try:
            layer["concurrency_limit"] = int(concurrency)
        except ValueError:
            raise ConfigError(
                f"Invalid UPSTREAM_SYNC_CONCURRENCY '{concurrency}': must be a positive integer"
            ) from None

    token = os.getenv("UPSTREAM_SYNC_TOKEN")
    if token:
        layer["auth"] = {"type": "token", "token": token}
    return layer


def _merge_nested(base: dict[str, Any], layer: dict[str, Any]) -> dict[str, Any]:
    """Overlay *layer* onto *base*; nested dicts merge one level deep."""
    merged = dict(base)
    for key, value in layer.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_config(
    overrides: dict[str, Any] | None = None,
    yaml_data: dict[str, Any] | None = None,
    require_source: bool = True,
) -> UnifiedConfig:
    """Build the effective ``UnifiedConfig``.

    The caller is responsible for ``load_dotenv()`` so that ``.env`` values
    are visible through ``os.getenv()``.

    Args:
        overrides: ``SyncConfig`` field values from the CLI.  ``None``
            values are ignored.
        yaml_data: Raw merged YAML (all sections).
        require_source: Insist on ``upstream_repo`` and at least one mapping.

    Returns:
        Validated ``UnifiedConfig``.

    Raises:
        ConfigError: If a value is invalid or a required field is missing
            after every source was consulted.
    """
    raw = dict(yaml_data or {})
    sync_raw: dict[str, Any] = dict(raw.get("sync") or {})

    sync_raw = _merge_nested(sync_raw, _env_layer())
    cli_layer = {k: v for k, v in (overrides or {}).items() if v is not None}
    sync_raw = _merge_nested(sync_raw, cli_layer)
    raw["sync"] = sync_raw

    try:
        config = build_config(raw)
    except ValidationError as exc:
        raise ConfigError("Invalid configuration", cause=exc) from exc

    if require_source:
        validate_sync_config(config.sync)
    return config


def validate_sync_config(sync: SyncConfig) -> None:
    """Check fields that have no usable default.

    Raises:
        ConfigError: If the upstream repository or mappings are missing.
    """
    if not sync.upstream_repo:
        raise ConfigError(
            "Upstream repository not set. Pass --repo, set UPSTREAM_SYNC_REPO, "
            "or add 'sync.upstream_repo' to the config file."
        )
    if not sync.mappings:
        raise ConfigError(
            "No directories to sync. Pass --dirs, set UPSTREAM_SYNC_DIRS, "
            "or add 'sync.mappings' to the config file."
        )
    if sync.force_overwrite and sync.preview_only:
        logger.warning("force_overwrite has no effect in preview-only mode")
