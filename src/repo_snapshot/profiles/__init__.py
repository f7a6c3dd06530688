"""Profile documents: loading, inheritance and the packaged built-in profiles."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from repo_snapshot.config import PROFILE_DIR_NAME
from repo_snapshot.exceptions import ConfigurationError
from repo_snapshot.file_manipulation import normalize_globs
from repo_snapshot.logging import logger
from repo_snapshot.rules import Rule, parse_rule_group

if TYPE_CHECKING:
    from collections.abc import Sequence

BUILTIN_PROFILES_DIR = Path(__file__).parent
PROFILE_SUFFIXES = (".yml", ".yaml", ".json")

# keys concatenated base-first when a profile extends another
CONCAT_KEYS = ("rules", "globalExcludeRules", "include", "exclude", "external", "transforms")


class Always(BaseModel):
    model_config = ConfigDict(frozen=True)

    include: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)


class ExternalSource(BaseModel):
    """An extra local tree merged into the snapshot under ``destination``."""

    model_config = ConfigDict(frozen=True)

    source: str
    destination: str = ""
    rules: list[list[Rule]] = Field(default_factory=list)
    optional: bool = False

    @field_validator("rules", mode="before")
    @classmethod
    def _parse_rules(cls, value: Any) -> Any:  # noqa: ANN401
        # a plain list of globs is the short form of one include set per glob
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return globs_to_rule_group(value)
        return parse_rule_group(value)


class TransformOverride(BaseModel):
    """Profile entry enabling, disabling or configuring one transformer."""

    model_config = ConfigDict(frozen=True)

    name: str
    enabled: bool = True
    options: dict[str, Any] = Field(default_factory=dict)


class Profile(BaseModel):
    """A fully resolved profile: ``extends`` is gone, legacy globs are rules."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    name: str = ""
    description: str = ""
    rules: list[list[Rule]] = Field(default_factory=list)
    global_exclude_rules: list[list[Rule]] = Field(default_factory=list, alias="globalExcludeRules")
    always: Always = Field(default_factory=Always)
    include: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)
    external: list[ExternalSource] = Field(default_factory=list)
    transforms: list[TransformOverride] = Field(default_factory=list)
    source: str = Field(default="", description="File the profile was loaded from")

    @field_validator("transforms", mode="before")
    @classmethod
    def _parse_transforms(cls, value: Any) -> Any:  # noqa: ANN401
        if not isinstance(value, list):
            return value
        return [{"name": v} if isinstance(v, str) else v for v in value]


class ProfileInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    path: Path
    location: str


def globs_to_rule_group(globs: Sequence[str]) -> list[list[Rule]]:
    """Turn legacy glob lists into one ``path glob`` rule set per pattern."""
    return [[Rule("path", "glob", g)] for g in normalize_globs(globs)]


def read_profile_document(path: Path) -> dict[str, Any]:
    """Read a YAML or JSON profile document.

    Args:
        path: profile file.

    Raises:
        ConfigurationError: if the file is missing, unparsable or not a mapping.

    Returns:
        dict[str, Any]: the raw document.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(message=f"Cannot read profile {path}: {e}", source=str(path)) from e
    try:
        data = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text)
    except (yaml.YAMLError, ValueError) as e:
        raise ConfigurationError(message=f"Cannot parse profile {path}: {e}", source=str(path)) from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            message=f"Profile {path} must be a mapping, got {type(data).__name__}",
            source=str(path),
        )
    return data


def normalize_document(data: dict[str, Any], source: str) -> dict[str, Any]:
    """Validate rule groups and fold legacy ``include``/``exclude`` globs into them.

    Raises:
        ConfigurationError: on an invalid rule or glob list.
    """
    doc = dict(data)
    for key in ("include", "exclude"):
        globs = doc.get(key) or []
        if isinstance(globs, str):
            globs = [globs]
        if not isinstance(globs, list) or not all(isinstance(g, str) for g in globs):
            raise ConfigurationError(message=f"'{key}' must be a list of globs", source=source)
        doc[key] = list(globs)
    doc["rules"] = parse_rule_group(doc.get("rules"), source) + globs_to_rule_group(doc["include"])
    doc["globalExcludeRules"] = parse_rule_group(doc.get("globalExcludeRules"), source) + globs_to_rule_group(
        doc["exclude"],
    )
    always = doc.get("always") or {}
    if isinstance(always, list):
        # bare list is the include list
        always = {"include": always}
    if not isinstance(always, dict):
        raise ConfigurationError(message="'always' must be a mapping or a list", source=source)
    doc["always"] = {"include": list(always.get("include") or []), "exclude": list(always.get("exclude") or [])}
    for key in ("external", "transforms"):
        value = doc.get(key) or []
        if not isinstance(value, list):
            raise ConfigurationError(message=f"'{key}' must be a list", source=source)
        doc[key] = list(value)
    return doc


def _union(first: list[str], second: list[str]) -> list[str]:
    return list(dict.fromkeys([*first, *second]))


def merge_profiles(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge two normalized documents, ``overlay`` extending ``base``.

    Concatenated keys are base-first, ``always`` lists are unioned in first
    occurrence order and any other key of ``overlay`` wins.

    Returns:
        dict[str, Any]: the merged document.
    """
    # a name is never inherited
    merged = {**{k: v for k, v in base.items() if k != "name"}, **overlay}
    for key in CONCAT_KEYS:
        merged[key] = [*(base.get(key) or []), *(overlay.get(key) or [])]
    base_always, overlay_always = base.get("always") or {}, overlay.get("always") or {}
    merged["always"] = {
        part: _union(base_always.get(part) or [], overlay_always.get(part) or []) for part in ("include", "exclude")
    }
    return merged


def _format_chain(chain: Sequence[str]) -> str:
    return " -> ".join(Path(p).name for p in chain)


class ProfileLoader:
    """Find, read and resolve profiles.

    Names are looked up as ``<name>.yml``, ``<name>.yaml`` or ``<name>.json``
    in the project ``.ctree`` directory, then each extra directory, then the
    packaged built-in profiles. Loading never writes anything.
    """

    def __init__(
        self,
        project_dir: Path | None = None,
        search_dirs: Sequence[Path] = (),
        builtin_dir: Path = BUILTIN_PROFILES_DIR,
    ) -> None:
        self.project_dir = project_dir
        self.search_dirs = list(search_dirs)
        self.builtin_dir = builtin_dir

    def locations(self) -> list[tuple[str, Path]]:
        """Search locations in lookup order, labelled project/extra/built-in."""
        out: list[tuple[str, Path]] = []
        if self.project_dir is not None:
            out.append(("project", self.project_dir / PROFILE_DIR_NAME))
        out.extend(("extra", Path(d)) for d in self.search_dirs)
        out.append(("built-in", self.builtin_dir))
        return out

    def find(self, identifier: str, relative_to: Path | None = None) -> Path:
        """Locate the file for a profile name or path.

        Args:
            identifier: a profile name or a path to a profile file.
            relative_to: directory searched first, used for ``extends``.

        Raises:
            ConfigurationError: if no file matches.

        Returns:
            Path: the resolved profile file.
        """
        candidate = Path(identifier).expanduser()
        looks_like_path = "/" in identifier or "\\" in identifier or candidate.suffix.lower() in PROFILE_SUFFIXES
        if looks_like_path:
            for path in (candidate, (relative_to / candidate) if relative_to else None):
                if path is not None and path.is_file():
                    return path.resolve()
            raise ConfigurationError(message=f"Profile not found: {identifier}", source=identifier)

        dirs = [relative_to] if relative_to is not None else []
        dirs.extend(d for _label, d in self.locations())
        tried: list[str] = []
        for directory in dirs:
            for suffix in PROFILE_SUFFIXES:
                path = directory / f"{identifier}{suffix}"
                tried.append(str(path))
                if path.is_file():
                    logger.debug("profile found", profile=identifier, path=str(path))
                    return path.resolve()
        raise ConfigurationError(
            message=f"Profile not found: {identifier} (searched {', '.join(tried)})",
            source=identifier,
        )

    def load(self, identifier: str | Path) -> Profile:
        """Load and fully resolve a profile.

        Args:
            identifier: profile name or path.

        Raises:
            ConfigurationError: if the profile or a base is missing, unparsable,
                invalid, or extends itself through its chain.

        Returns:
            Profile: the resolved profile.
        """
        path = self.find(str(identifier))
        doc = self._resolve(path, ())
        doc.pop("extends", None)
        doc.setdefault("name", path.stem)
        doc["source"] = str(path)
        try:
            return Profile.model_validate(doc)
        except ValidationError as e:
            raise ConfigurationError(message=f"Invalid profile {path}: {e}", source=str(path)) from e

    def _resolve(self, path: Path, chain: tuple[str, ...]) -> dict[str, Any]:
        identity = str(path.resolve())
        if identity in chain:
            full = (*chain, identity)
            raise ConfigurationError(
                message=f"Circular profile inheritance: {_format_chain(full)}",
                source=identity,
                chain=full,
            )
        chain = (*chain, identity)
        doc = normalize_document(read_profile_document(path), identity)

        extends = doc.pop("extends", None)
        if not extends:
            return doc
        bases = [extends] if isinstance(extends, str) else extends
        if not isinstance(bases, list) or not all(isinstance(b, str) for b in bases):
            raise ConfigurationError(message="'extends' must be a name or a list of names", source=identity)

        merged: dict[str, Any] | None = None
        for base_name in bases:
            base_doc = self._resolve(self.find(base_name, relative_to=path.parent), chain)
            merged = base_doc if merged is None else merge_profiles(merged, base_doc)
        return merge_profiles(merged or {}, doc)

    def list_available(self) -> list[ProfileInfo]:
        """List profiles across search locations; the first location wins for a name."""
        seen: set[str] = set()
        profiles: list[ProfileInfo] = []
        for label, directory in self.locations():
            if not directory.is_dir():
                continue
            for path in sorted(directory.iterdir()):
                if path.suffix.lower() not in PROFILE_SUFFIXES or path.stem in seen:
                    continue
                try:
                    doc = read_profile_document(path)
                except ConfigurationError as e:
                    logger.warning("skipping unreadable profile", path=str(path), error=e.message)
                    continue
                seen.add(path.stem)
                profiles.append(
                    ProfileInfo(
                        name=path.stem,
                        description=str(doc.get("description") or ""),
                        path=path,
                        location=label,
                    ),
                )
        return profiles
