"""repo_snapshot: filtered, AI-ready snapshots of a source tree."""

__version__ = "0.1.0"
