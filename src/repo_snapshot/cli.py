"""repo_snapshot: export a filtered, AI-ready snapshot of a project.

The project tree is enumerated with `git ls-files` (falling back to a
filesystem walk when Git is unavailable or disabled with `--no-git`), filtered
through a rule profile, loaded with binary detection, transformed (oversized
text, dotenv files, keys, CSV, documents) and rendered as Markdown, JSONL or
XML.

Usage
-----
Run `python -m repo_snapshot.cli --help` for full options. Common examples:
    - Markdown with the default profile:
        uv run python -m repo_snapshot.cli --output repo_for_llm.md

    - JSONL through a project profile, streamed:
        uv run python -m repo_snapshot.cli --profile docs --format jsonl --stream --output corpus.jsonl

    - List the available profiles:
        uv run python -m repo_snapshot.cli --list-profiles
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from repo_snapshot import __version__
from repo_snapshot.api import snapshot
from repo_snapshot.exceptions import ConfigurationError
from repo_snapshot.logging import logger, setup_logging
from repo_snapshot.output_construction import FORMATS, resolve_format
from repo_snapshot.profiles import ProfileLoader
from repo_snapshot.settings import Settings

if TYPE_CHECKING:
    from collections.abc import Sequence


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="repo-snapshot",
        description="Export a filtered project snapshot for LLM consumption (md/jsonl/xml).",
        argument_default=argparse.SUPPRESS,
    )
    p.add_argument("--repo", type=str, help="Repository root.")
    p.add_argument(
        "--output",
        type=str,
        help="Output file (.md, .jsonl or .xml); stdout when omitted.",
    )
    p.add_argument(
        "--format",
        type=str,
        choices=list(FORMATS),
        help="Force format.",
    )
    p.add_argument("--profile", type=str, help="Profile name or path (default: default).")
    p.add_argument(
        "--profile-dir",
        dest="profile_dirs",
        action="append",
        help="Extra profile directory (repeatable).",
    )
    p.add_argument("--list-profiles", action="store_true", help="List available profiles and exit.")
    p.add_argument("--no-git", action="store_true", help="Do not use git ls-files.")
    p.add_argument("--stream", action="store_true", help="Write chunks as they are rendered.")
    p.add_argument("--no-cache", action="store_true", help="Disable the transform cache.")
    p.add_argument("--cache-dir", type=str, help="On-disk transform cache directory.")
    p.add_argument("--log-file", type=str, help="Log file path.")
    p.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Minimum log level.",
    )
    p.add_argument(
        "--max-bytes",
        type=int,
        help="Text files above are reduced to head and tail lines.",
    )
    p.add_argument("--compact", action="store_true", help="Reduce markdown verbosity.")
    p.add_argument(
        "--chunk-chars",
        type=int,
        help="Chunk size for jsonl.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


def parse_args(argv: Sequence[str] | None = None) -> tuple[Settings, bool]:
    """Parse command line arguments.

    Options left out fall back to ``REPO_SNAPSHOT_*`` environment values, then to the
    ``Settings`` defaults.

    Returns:
        tuple[Settings, bool]: the settings and whether ``--list-profiles`` was given.
    """
    args = vars(build_parser().parse_args(argv))
    list_profiles = args.pop("list_profiles", False)
    if "repo" in args:
        args["repo"] = Path(args["repo"]).resolve()
    return Settings.from_env(**args), list_profiles


def print_profiles(settings: Settings) -> None:
    loader = ProfileLoader(project_dir=Path(settings.repo), search_dirs=settings.profile_dirs)
    for info in loader.list_available():
        print(f"{info.name}\t{info.location}\t{info.description}")


def main(argv: Sequence[str] | None = None) -> int:
    settings, list_profiles = parse_args(argv)
    if settings.log_file or settings.log_level != "info":
        setup_logging(settings.log_file or None, settings.log_level, force=True)

    if list_profiles:
        print_profiles(settings)
        return 0

    out_path = Path(settings.output) if settings.output else None
    fmt = resolve_format(out_path, settings.format)
    settings = settings.model_copy(update={"format": fmt})

    try:
        if settings.stream:
            if out_path is None:
                result = snapshot(settings, sink=sys.stdout.write)
            else:
                with out_path.open("w", encoding="utf-8") as fh:
                    result = snapshot(settings, sink=fh.write)
        else:
            result = snapshot(settings)
            if out_path is None:
                sys.stdout.write(result.output or "")
            else:
                out_path.write_text(result.output or "", encoding="utf-8")
    except ConfigurationError as e:
        logger.error("configuration error", error=e.message, source=e.source)  # noqa: TRY400
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return 2

    if out_path is not None:
        print(f"Wrote {out_path} format={fmt} files={len(result.files)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
