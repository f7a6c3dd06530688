from __future__ import annotations

import os
from enum import StrEnum, auto
from pathlib import Path
from typing import Any

from dotenv import dotenv_values, find_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

ENV_FILE = find_dotenv(usecwd=True)
ENV_PREFIX = "REPO_SNAPSHOT_"


class BinaryPolicy(StrEnum):
    """What the loading stage does with a file classified as binary."""

    SKIP = auto()
    COMMENT = auto()
    PLACEHOLDER = auto()
    BASE64 = auto()
    CONVERT = auto()


class ConcurrencySettings(BaseModel):
    """Budgets handed to the task limiter on first initialization."""

    model_config = ConfigDict(frozen=True)

    total_budget: int = Field(default=20, ge=1, description="Total concurrent operations.")
    budgets: dict[str, int] = Field(default_factory=dict, description="Per-domain overrides.")


class RetrySettings(BaseModel):
    """Bounded retry of transient filesystem errors while loading."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=0.1, ge=0, description="Seconds before the first retry.")
    max_delay: float = Field(default=2.0, ge=0)
    jitter: bool = False


class BinaryDetectSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    sample_bytes: int = Field(default=8192, ge=1)
    non_printable_threshold: float = Field(default=0.3, ge=0, le=1)


class TransformerSettings(BaseModel):
    """Per-transformer switches, keyed by transformer name in ``Settings.transformers``."""

    model_config = ConfigDict(frozen=True, extra="allow")

    enabled: bool = True
    options: dict[str, Any] = Field(default_factory=dict)


class Settings(BaseModel):
    """Configuration settings for the repo_snapshot package.

    Besides plain attribute access, ``get`` offers the dotted-key lookup used by
    stages (``settings.get("binary_detect.sample_bytes", 8192)``).
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    repo: Path = Field(default_factory=Path.cwd, description="Repository root.")
    output: Path | None = Field(default=None, description="Output file (.md, .jsonl or .xml).")
    format: str = Field(default="", description="Force format (md, jsonl, xml).")
    profile: str = Field(default="default", description="Profile name or path.")
    profile_dirs: list[Path] = Field(default_factory=list, description="Extra profile search directories.")
    no_git: bool = Field(default=False, description="Do not use git ls-files.")
    log_file: str = Field(default="", description="Log file path.")
    log_level: str = Field(default="info", description="Minimum log level.")

    stream: bool = Field(default=False, description="Stream rendered chunks instead of buffering.")
    no_cache: bool = Field(default=False, description="Disable transform caching for this run.")
    cache_dir: Path | None = Field(default=None, description="On-disk transform cache directory.")
    cache_ttl: int = Field(default=86_400, ge=0, description="Cache entry lifetime in seconds.")

    binary_policy: BinaryPolicy = Field(default=BinaryPolicy.PLACEHOLDER)
    binary_category_policy: dict[str, BinaryPolicy] = Field(
        default_factory=lambda: {"document": BinaryPolicy.CONVERT, "cert": BinaryPolicy.CONVERT},
        description="Policy overrides per binary category.",
    )
    binary_placeholder_text: str = Field(default="[Binary file not included]")
    binary_detect: BinaryDetectSettings = Field(default_factory=BinaryDetectSettings)
    structure_only: list[str] = Field(
        default_factory=list,
        description="Globs of files listed in the tree without their content.",
    )

    max_bytes: int = Field(
        default=500_000,
        description="Text files above are reduced to head and tail lines.",
    )
    text_head_lines: int = Field(default=200, description="Head lines for big text files.")
    text_tail_lines: int = Field(default=80, description="Tail lines for big text files.")
    csv_max_rows: int = Field(default=10, description="Rows kept by the CSV transformer.")
    compact: bool = Field(default=False, description="Reduce markdown verbosity.")
    chunk_chars: int = Field(default=24_000, description="Chunk size for jsonl.")

    transformers: dict[str, TransformerSettings] = Field(default_factory=dict)
    concurrency: ConcurrencySettings = Field(default_factory=ConcurrencySettings)
    fs_retry: RetrySettings = Field(default_factory=RetrySettings)
    track_memory: bool = Field(default=False, description="Record tracemalloc figures per stage.")

    @field_validator("transformers", mode="before")
    @classmethod
    def _coerce_transformer_flags(cls, value: Any) -> Any:  # noqa: ANN401
        # ``{"csv": false}`` is shorthand for ``{"csv": {"enabled": false}}``
        if isinstance(value, dict):
            return {k: {"enabled": v} if isinstance(v, bool) else v for k, v in value.items()}
        return value

    def get(self, key: str, default: Any = None) -> Any:  # noqa: ANN401
        """Look up a dotted key, returning ``default`` when any segment is missing.

        Args:
            key: dotted path such as ``"concurrency.total_budget"``.
            default: value returned for unknown keys.

        Returns:
            Any: the configured value or ``default``.
        """
        current: Any = self
        for part in key.split("."):
            if isinstance(current, BaseModel):
                if part not in type(current).model_fields and part not in (current.model_extra or {}):
                    return default
                current = getattr(current, part)
            elif isinstance(current, dict):
                if part not in current:
                    return default
                current = current[part]
            else:
                return default
        return current

    def policy_for(self, category: str | None) -> BinaryPolicy:
        """Return the binary policy for a category, falling back to ``binary_policy``."""
        if category and category in self.binary_category_policy:
            return self.binary_category_policy[category]
        return self.binary_policy

    @classmethod
    def from_env(cls, **overrides: Any) -> Settings:  # noqa: ANN401
        """Build settings from ``REPO_SNAPSHOT_*`` variables, then apply overrides.

        Values are read from the ``.env`` file found from the current directory
        first, and the process environment wins over it.

        Returns:
            Settings: the resulting settings.
        """
        raw: dict[str, Any] = {}
        sources = [dotenv_values(ENV_FILE) if ENV_FILE else {}, os.environ]
        for source in sources:
            for name, value in source.items():
                if value is None or not name.startswith(ENV_PREFIX):
                    continue
                field_name = name.removeprefix(ENV_PREFIX).lower()
                if field_name in cls.model_fields:
                    raw[field_name] = value
        raw.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(raw)
