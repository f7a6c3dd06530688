from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class RepoSnapshotError(Exception):
    """Base exception for errors in the repo_snapshot package."""

    message: str = ""

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class ConfigurationError(RepoSnapshotError):
    """Raised when a profile or setting is missing, unparsable or circular."""

    source: str = ""
    chain: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class NotAGitRepositoryError(RepoSnapshotError):
    """Raised when the specified directory is not a Git repository."""

    folder: Path = field(default_factory=Path)
    message: str = "The specified directory is not a Git repository."


@dataclass(frozen=True)
class TransformError(RepoSnapshotError):
    """Raised when a transformer fails on a single file."""

    transformer: str = ""
    file: str = ""


@dataclass(frozen=True)
class NoTransformerError(TransformError):
    """Raised by the registry when no transformer is bound to a file."""


@dataclass(frozen=True)
class StageError(RepoSnapshotError):
    """Raised when a whole pipeline stage fails.

    Stages decide in ``handle_error`` whether a recoverable error turns into a
    degraded batch or aborts the run.
    """

    stage: str = ""
    recoverable: bool = False


@dataclass(frozen=True)
class TaskQueueClearedError(RepoSnapshotError):
    """Raised into queued tasks dropped by ``TaskLimiter.clear_all``."""

    domain: str = ""
    message: str = "Queued task dropped before it started."
