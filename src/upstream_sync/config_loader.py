"""
Hierarchical configuration loader for upstream_sync.

Provides convention-based config file discovery, YAML ``!include`` support,
``${VAR}`` interpolation, and a "project wins" merge of discovered files.

Usage:
    from upstream_sync.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

from upstream_sync.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "UPSTREAM_SYNC_CONFIG"
PROJECT_DIR = ".upstream_sync"

# ---------------------------------------------------------------------------
# 1. Env var interpolation
# ---------------------------------------------------------------------------

# Matches ${VAR} and ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Replace ``${VAR}`` and ``${VAR:-default}`` patterns with env values.

    * ``${VAR}`` becomes ``os.environ.get(VAR, "")``.
    * ``${VAR:-default}`` uses *default* when VAR is unset or empty.
    * A ``${`` with no closing ``}`` is left as is.
    """

    def _replace(match: re.Match) -> str:
        env_val = os.environ.get(match.group(1))
        if env_val:
            return env_val
        return match.group(2) if match.group(2) is not None else ""

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _interpolate_recursive(obj: Any) -> Any:
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _interpolate_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# 2. YAML !include support
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """SafeLoader subclass with ``!include``; the global loader is untouched."""


def _include_constructor(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    """Handle ``!include relative/or/absolute.yml``."""
    raw: str = loader.construct_scalar(node)
    base_dir = Path(loader.name).resolve().parent
    include_path = (Path(raw) if os.path.isabs(raw) else base_dir / raw).resolve()

    stack: list[Path] = getattr(loader, "_include_stack", [])
    if include_path in stack:
        chain = " -> ".join(str(p) for p in [*stack, include_path])
        raise ConfigError(f"Circular include detected: {chain}")

    if not include_path.exists():
        raise ConfigError(
            f"Include file not found: {include_path} "
            f"(referenced from {Path(loader.name).resolve()})"
        )

    return _load_yaml_with_includes(include_path, _include_stack=[*stack, include_path])


ConfigLoader.add_constructor("!include", _include_constructor)


def _load_yaml_with_includes(
    path: Path,
    *,
    _include_stack: list[Path] | None = None,
) -> Any:
    path = path.resolve()
    with open(path, "r", encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader._include_stack = _include_stack or [path]  # type: ignore[attr-defined]
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load one explicit config file (``--config``), interpolated.

    Raises:
        ConfigError: If the file is missing, unparsable or not a mapping.
    """
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        data = _load_yaml_with_includes(path)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}", cause=exc) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Config file {path} must contain a mapping, got {type(data).__name__}"
        )
    return _interpolate_recursive(data)


# ---------------------------------------------------------------------------
# 3. Convention-based file discovery
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Return existing config file paths in precedence order (highest first).

    Search order:
        1. ``UPSTREAM_SYNC_CONFIG`` env var (explicit single path)
        2. ``.upstream_sync/config.yml`` in CWD
        3. ``.upstream_sync/config.yaml`` in CWD
        4. ``~/.config/upstream_sync/config.yml``
    """
    candidates: list[Path] = []

    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        candidates.append(Path(env_path).expanduser().resolve())

    cwd = Path.cwd()
    candidates.append(cwd / PROJECT_DIR / "config.yml")
    candidates.append(cwd / PROJECT_DIR / "config.yaml")
    candidates.append(Path.home() / ".config" / "upstream_sync" / "config.yml")

    return [p for p in candidates if p.exists()]


_STARTER_CONFIG = """\
# upstream-sync configuration
#
# Values may reference environment variables: ${UPSTREAM_TOKEN}
#
# sync:
#   upstream_repo: https://github.com/example/upstream.git
#   upstream_branch: main
#   target_branch: main
#   mappings:
#     - src/core
#     - source: docs/api
#       target: vendor/docs
#   auto_push: false
#   concurrency_limit: 5
#   retry:
#     max_retries: 3
#     initial_delay: 2000
#     backoff_factor: 1.5
#   auth:
#     type: token
#     token: ${UPSTREAM_TOKEN}
#   conflict:
#     default_strategy: prompt-user
#     auto_resolve_types: [.json, .yml]
#   gray_release:
#     strategy: percentage
#     percentage: 30
#     validation_command: make test
#
# webhook:
#   secret: ${WEBHOOK_SECRET}
#   trigger_branch: main
#
# logging:
#   level: INFO
#   file: null
"""


def ensure_config(target: Path | None = None) -> Path:
    """Return the active config file, writing a commented starter if none exists."""
    existing = discover_config_files()
    if existing:
        logger.debug("Config file already exists: %s", existing[0])
        return existing[0]

    config_path = target or Path.cwd() / PROJECT_DIR / "config.yml"
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", config_path)
    return config_path


# ---------------------------------------------------------------------------
# 4. Hierarchical merge
# ---------------------------------------------------------------------------


def load_hierarchical_config() -> dict[str, Any]:
    """Load and merge all discovered config files.

    Files are applied from lowest precedence to highest; each file's
    top-level keys replace (not deep-merge) earlier ones.  Env var
    interpolation runs after the merge.  Returns ``{}`` when nothing is found.
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config files found, using defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        try:
            data = _load_yaml_with_includes(path)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}", cause=exc) from exc

        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Config file %s has non-dict root (%s), skipping",
                path,
                type(data).__name__,
            )

    return _interpolate_recursive(merged)
