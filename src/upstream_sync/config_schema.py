"""Unified configuration schema for upstream_sync.

Defines Pydantic models for every config section: the sync run itself,
retry policy, authentication, conflict resolution, branch strategy, the
tree-hash cache, gray release, webhook intake and logging.

Usage:
    from upstream_sync.config_schema import UnifiedConfig, build_config

    raw = load_hierarchical_config()
    unified = build_config(raw)
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

StrategyName = Literal["use-source", "keep-target", "auto-merge", "prompt-user"]


# ---------------------------------------------------------------------------
# Retry / authentication
# ---------------------------------------------------------------------------


class RetryConfig(BaseModel):
    """Retry policy for network operations (fetch, push).

    Delays are in milliseconds.  Attempt *n* (1-based) is followed by a
    sleep of ``initial_delay * backoff_factor ** (n - 1)``.
    """

    max_retries: int = Field(default=3, ge=0, le=20)
    initial_delay: int = Field(default=2000, ge=0)
    backoff_factor: float = Field(default=1.5, ge=1.0)

    model_config = {"frozen": True}


class AuthConfig(BaseModel):
    """Credentials for the upstream remote.

    Exactly one scheme per run: ``ssh`` needs ``ssh_key_path``,
    ``user-pass`` needs ``username`` and ``password``, ``token`` needs
    ``token`` (``username`` optional, defaults to ``oauth2``).
    """

    type: Literal["ssh", "user-pass", "token"]
    ssh_key_path: str | None = None
    username: str | None = None
    password: str | None = None
    token: str | None = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _one_scheme(self) -> AuthConfig:
        match self.type:
            case "ssh":
                if not self.ssh_key_path:
                    raise ValueError("ssh auth requires ssh_key_path")
                if self.password or self.token:
                    raise ValueError("ssh auth cannot also set password or token")
            case "user-pass":
                if not (self.username and self.password):
                    raise ValueError("user-pass auth requires username and password")
                if self.token or self.ssh_key_path:
                    raise ValueError("user-pass auth cannot also set token or ssh_key_path")
            case "token":
                if not self.token:
                    raise ValueError("token auth requires token")
                if self.password or self.ssh_key_path:
                    raise ValueError("token auth cannot also set password or ssh_key_path")
        return self


# ---------------------------------------------------------------------------
# Conflict resolution
# ---------------------------------------------------------------------------


class ConflictConfig(BaseModel):
    """Conflict detection and resolution settings.

    Attributes:
        default_strategy: Strategy used when no override is given.
        auto_resolve_types: File extensions (with dot) that never prompt.
        auto_resolve_strategy: Used for auto-resolve extensions when the
            default strategy is ``prompt-user``.
        text_extensions: Extensions eligible for ``auto-merge``.
        check_permissions: Raise ``permission`` conflicts when content
            matches but mode bits differ.
        detect_renames: Report files whose content moved to a new name.
        version_pattern: Regex with one group; enables version conflicts.
        log_resolutions: Append every resolution to ``resolution_log``.
    """

    default_strategy: StrategyName = "prompt-user"
    auto_resolve_types: list[str] = Field(
        default_factory=lambda: [".json", ".yml", ".yaml", ".md"]
    )
    auto_resolve_strategy: Literal["use-source", "keep-target", "auto-merge"] = "use-source"
    text_extensions: list[str] = Field(
        default_factory=lambda: [
            ".txt", ".md", ".py", ".js", ".ts", ".json", ".yml", ".yaml",
            ".css", ".html", ".xml", ".toml", ".ini", ".cfg", ".sh",
        ]
    )
    check_permissions: bool = False
    detect_renames: bool = True
    version_pattern: str | None = None
    log_resolutions: bool = False
    resolution_log: str = ".upstream_sync/resolutions.jsonl"

    model_config = {"frozen": True}

    @field_validator("auto_resolve_types", "text_extensions")
    @classmethod
    def _dotted(cls, value: list[str]) -> list[str]:
        return [ext if ext.startswith(".") else f".{ext}" for ext in value]


# ---------------------------------------------------------------------------
# Branch strategy / cache
# ---------------------------------------------------------------------------


class BranchStrategyConfig(BaseModel):
    """Working-branch policy applied before the temporary sync branch.

    ``branch_pattern`` may contain ``{feature}``, ``{release}``,
    ``{hotfix}`` and ``{date}`` placeholders.  When unset, each strategy has
    its own pattern (``feature/{feature}-{date}`` and so on).
    """

    enable: bool = False
    strategy: Literal["feature", "release", "hotfix", "develop"] = "feature"
    base_branch: str = "main"
    branch_pattern: str | None = None
    variables: dict[str, str] = Field(default_factory=dict)
    auto_switch_back: bool = True
    auto_delete_merged: bool = False

    model_config = {"frozen": True}


class CacheConfig(BaseModel):
    """On-disk tree-hash cache."""

    enabled: bool = True
    dir: str = ".upstream_sync/cache"
    expiry_days: float = Field(default=7, gt=0)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Gray release
# ---------------------------------------------------------------------------


class WeightedGroup(BaseModel):
    name: str
    percentage: float = Field(default=100, ge=0, le=100)

    model_config = {"frozen": True}


class AlertThresholds(BaseModel):
    """Alert thresholds checked by the release monitor.

    Attributes:
        error_rate: Percent of errors per selected file.
        max_duration_seconds: Ceiling on elapsed wall time.
        performance_degradation: Percent slower than ``baseline_seconds``.
    """

    error_rate: float = Field(default=5.0, ge=0)
    max_duration_seconds: float = Field(default=600.0, gt=0)
    performance_degradation: float = Field(default=20.0, ge=0)
    baseline_seconds: float | None = None

    model_config = {"frozen": True}


class GrayReleaseConfig(BaseModel):
    strategy: Literal["percentage", "directory", "file", "user-group", "region"] = "percentage"
    percentage: float = Field(default=30, gt=0, le=100)
    canary_dirs: list[str] = Field(default_factory=list)
    file_patterns: list[str] = Field(default_factory=list)
    user_groups: list[WeightedGroup] = Field(default_factory=list)
    regions: list[WeightedGroup] = Field(default_factory=list)
    validation_command: str | None = None
    validation_timeout: float = Field(default=300.0, gt=0)
    enable_monitoring: bool = False
    monitor_interval: float = Field(default=30.0, gt=0)
    alert_thresholds: AlertThresholds = Field(default_factory=AlertThresholds)
    canary_dir: str = ".upstream_sync/canary"
    rollback_dir: str = ".upstream_sync/rollback"
    seed: int | None = None

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Webhook / logging
# ---------------------------------------------------------------------------


class WebhookConfig(BaseModel):
    secret: str | None = None
    allowed_events: list[str] = Field(default_factory=lambda: ["push"])
    trigger_branch: str | None = None

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: ``text`` or ``json``.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: Literal["text", "json"] = "text"

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Sync run
# ---------------------------------------------------------------------------


class DirectoryMapping(BaseModel):
    """One upstream directory synced into the local repository.

    ``target`` defaults to ``source``.  A bare string is accepted in YAML.
    """

    source: str
    target: str | None = None

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data: object) -> object:
        if isinstance(data, str):
            return {"source": data}
        return data

    @field_validator("source", "target")
    @classmethod
    def _relative(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip().strip("/")
        if not cleaned or cleaned.startswith("..") or "/../" in f"/{cleaned}/":
            raise ValueError(f"mapping path must be a relative subdirectory: {value!r}")
        return cleaned

    @property
    def target_path(self) -> str:
        return self.target or self.source


class SyncConfig(BaseModel):
    """Settings for one sync run.

    All fields except ``upstream_repo`` and ``mappings`` have defaults; those
    two are checked by ``config.load_config`` after every source is merged.
    """

    upstream_repo: str | None = None
    upstream_branch: str = "main"
    target_branch: str = "main"
    mappings: list[DirectoryMapping] = Field(default_factory=list)
    commit_message: str = "chore: sync upstream changes"
    auto_push: bool = False
    force_overwrite: bool = False
    preview_only: bool = False
    non_interactive: bool = False
    concurrency_limit: int = Field(default=5, ge=1, le=256)
    adaptive_concurrency: bool = False
    large_file_threshold: int = Field(default=10 * 1024 * 1024, gt=0)
    chunk_size: int = Field(default=5 * 1024 * 1024, gt=0)
    state_dir: str = ".upstream_sync"
    remote_name: str = "upstream"
    push_remote: str = "origin"
    ignore_patterns: list[str] = Field(default_factory=list)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    auth: AuthConfig | None = None
    conflict: ConflictConfig = Field(default_factory=ConflictConfig)
    branch_strategy: BranchStrategyConfig = Field(default_factory=BranchStrategyConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    gray_release: GrayReleaseConfig = Field(default_factory=GrayReleaseConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has sensible defaults, so ``UnifiedConfig()`` (zero-config)
    is always valid.
    """

    sync: SyncConfig = Field(default_factory=SyncConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully: anything absent gets defaults.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)
