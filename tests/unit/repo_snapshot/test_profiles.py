from __future__ import annotations

import json
from pathlib import Path

import pytest

from repo_snapshot.exceptions import ConfigurationError
from repo_snapshot.profiles import ProfileLoader, merge_profiles, normalize_document
from repo_snapshot.rules import Rule


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def project(tmp_path: Path) -> Path:
    profiles = tmp_path / ".ctree"
    write(
        profiles / "base.yml",
        """
name: base
rules:
  - [[extension, "=", py]]
globalExcludeRules:
  - [[basename, "=", secrets.py]]
always:
  include: [README.md, setup.cfg]
""",
    )
    write(
        profiles / "child.yml",
        """
extends: base
rules:
  - [[extension, "=", md]]
include:
  - docs/
always:
  include: [setup.cfg, Makefile]
  exclude: [docs/draft.md]
""",
    )
    return tmp_path


@pytest.mark.unit
def test_extended_rules_are_base_first(project: Path) -> None:
    loader = ProfileLoader(project_dir=project)

    base = loader.load("base")
    child = loader.load("child")

    assert child.name == "child"
    assert child.rules == [
        *base.rules,
        [Rule("extension", "=", "md")],
        [Rule("path", "glob", "docs/**")],
    ]
    assert child.global_exclude_rules == base.global_exclude_rules
    assert child.always.include == ["README.md", "setup.cfg", "Makefile"]
    assert child.always.exclude == ["docs/draft.md"]
    assert "extends" not in child.model_dump()


@pytest.mark.unit
def test_extends_list_merges_left_to_right(tmp_path: Path) -> None:
    write(tmp_path / "a.yml", "rules: [[[extension, '=', a]]]\n")
    write(tmp_path / "b.yml", "rules: [[[extension, '=', b]]]\n")
    top = write(tmp_path / "top.yml", "extends: [a, b]\nrules: [[[extension, '=', c]]]\n")

    profile = ProfileLoader().load(str(top))

    assert [s[0].value for s in profile.rules] == ["a", "b", "c"]
    assert profile.name == "top"


@pytest.mark.unit
def test_cycle_names_the_full_chain(tmp_path: Path) -> None:
    write(tmp_path / "a.yml", "extends: b\n")
    write(tmp_path / "b.yml", "extends: a\n")

    with pytest.raises(ConfigurationError) as excinfo:
        ProfileLoader().load(str(tmp_path / "a.yml"))

    assert "a.yml -> b.yml -> a.yml" in excinfo.value.message
    assert len(excinfo.value.chain) == 3


@pytest.mark.unit
def test_self_extension_is_a_cycle(tmp_path: Path) -> None:
    write(tmp_path / "loop.yaml", "extends: loop\n")

    with pytest.raises(ConfigurationError, match=r"loop.yaml -> loop.yaml"):
        ProfileLoader().load(str(tmp_path / "loop.yaml"))


@pytest.mark.unit
def test_yaml_and_json_resolve_identically(tmp_path: Path) -> None:
    document = {
        "rules": [[["path", "glob", "src/**"], ["extension", "oneOf", ["py", "pyi"]]]],
        "globalExcludeRules": [[["contents", "contains", "DO NOT SHIP"]]],
        "exclude": ["*.lock"],
        "always": {"include": ["pyproject.toml"]},
    }
    json_path = write(tmp_path / "p.json", json.dumps(document))
    yaml_path = write(
        tmp_path / "p.yml",
        """
rules:
  - - [path, glob, "src/**"]
    - [extension, oneOf, [py, pyi]]
globalExcludeRules:
  - [[contents, contains, DO NOT SHIP]]
exclude: ["*.lock"]
always:
  include: [pyproject.toml]
""",
    )

    from_json = ProfileLoader().load(str(json_path))
    from_yaml = ProfileLoader().load(str(yaml_path))

    assert from_json.rules == from_yaml.rules
    assert from_json.global_exclude_rules == from_yaml.global_exclude_rules
    assert from_json.always == from_yaml.always


@pytest.mark.unit
@pytest.mark.parametrize(
    ("content", "match"),
    [
        ("rules: [[[path, =\n", "Cannot parse"),
        ("- just\n- a list\n", "must be a mapping"),
        ("rules: [[[colour, '=', red]]]\n", "Unknown rule field"),
        ("rules: [[[path, sortOf, x]]]\n", "Unknown rule operator"),
    ],
)
def test_invalid_documents_are_configuration_errors(tmp_path: Path, content: str, match: str) -> None:
    path = write(tmp_path / "bad.yml", content)

    with pytest.raises(ConfigurationError, match=match):
        ProfileLoader().load(str(path))


@pytest.mark.unit
def test_missing_profile(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="Profile not found: nowhere"):
        ProfileLoader(project_dir=tmp_path).load("nowhere")


@pytest.mark.unit
def test_builtin_default_profile_is_available(tmp_path: Path) -> None:
    loader = ProfileLoader(project_dir=tmp_path)

    profile = loader.load("default")

    assert profile.name == "default"
    assert [Rule("path", "glob", "node_modules/**")] in profile.global_exclude_rules
    assert any(info.name == "default" and info.location == "built-in" for info in loader.list_available())


@pytest.mark.unit
def test_project_profile_shadows_builtin(tmp_path: Path) -> None:
    write(tmp_path / ".ctree" / "default.yml", "description: mine\n")
    loader = ProfileLoader(project_dir=tmp_path)

    listed = {info.name: info for info in loader.list_available()}

    assert listed["default"].location == "project"
    assert loader.load("default").description == "mine"


@pytest.mark.unit
def test_external_globs_become_include_sets(tmp_path: Path) -> None:
    path = write(tmp_path / "ext.yml", "external:\n  - source: ../shared\n    destination: vendor\n    rules: ['*.md']\n")

    profile = ProfileLoader().load(str(path))

    assert profile.external[0].destination == "vendor"
    assert profile.external[0].rules == [[Rule("path", "glob", "*.md")]]


@pytest.mark.unit
def test_merge_profiles_unions_always_and_concatenates() -> None:
    base = normalize_document({"rules": [[["extension", "=", "py"]]], "always": ["a", "b"]}, "base")
    overlay = normalize_document({"description": "x", "always": {"include": ["b", "c"]}}, "overlay")

    merged = merge_profiles(base, overlay)

    assert merged["always"]["include"] == ["a", "b", "c"]
    assert merged["rules"] == [[Rule("extension", "=", "py")]]
    assert merged["description"] == "x"
