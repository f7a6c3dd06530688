from __future__ import annotations

from pathlib import Path

import pytest

from repo_snapshot.config import FileRecord
from repo_snapshot.exceptions import ConfigurationError
from repo_snapshot.rules import (
    FileView,
    Rule,
    RuleEngine,
    compile_regex,
    evaluate_rule,
    matches,
    parse_mtime,
    parse_rule,
    parse_rule_group,
    parse_size,
)


def record(path: str, **fields) -> FileRecord:
    return FileRecord(path=path, absolute_path=Path("/nonexistent") / path, **fields)


def view(path: str, **fields) -> FileView:
    return FileView(record(path, **fields))


@pytest.mark.unit
def test_markdown_profile_excludes_changelog() -> None:
    engine = RuleEngine(
        parse_rule_group([[["extension", "=", "md"]]]),
        parse_rule_group([[["basename", "=", "CHANGELOG.md"]]]),
    )

    selected = [p for p in ("README.md", "docs/guide.md", "CHANGELOG.md", "src/app.py") if engine.matches(view(p))]

    assert selected == ["README.md", "docs/guide.md"]


@pytest.mark.unit
def test_global_exclude_wins_over_matching_rules() -> None:
    rules = [[Rule("path", "glob", "**")], [Rule("extension", "=", "py")]]
    excludes = [[Rule("dirname", "startsWith", "build")]]

    assert matches(view("src/app.py"), rules, excludes) is True
    assert matches(view("build/app.py"), rules, excludes) is False


@pytest.mark.unit
def test_always_lists_bypass_rules_and_exclude_outranks_include() -> None:
    excludes = [[Rule("extension", "=", "lock")]]

    assert matches(view("uv.lock"), [], excludes, {"include": ["uv.lock"], "exclude": []}) is True
    assert matches(view("uv.lock"), [], excludes, {"include": ["./uv.lock"], "exclude": ["uv.lock"]}) is False
    assert matches(view("other.py"), [[Rule("extension", "=", "md")]], (), {"include": ["other.py"]}) is True


@pytest.mark.unit
def test_sets_are_anded_and_groups_are_ored() -> None:
    group = [
        [Rule("extension", "=", "py"), Rule("path", "startsWith", "src/")],
        [Rule("basename", "=", "Makefile")],
    ]

    assert matches(view("src/app.py"), group)
    assert not matches(view("tests/test_app.py"), group)
    assert matches(view("Makefile"), group)


@pytest.mark.unit
def test_empty_rule_group_selects_everything() -> None:
    assert matches(view("anything/at/all.bin"), [])


@pytest.mark.unit
def test_field_values() -> None:
    v = view("src/pkg/module.tar.gz", size=10, mtime=5.0)

    assert v.get("dirname") == "src/pkg"
    assert v.get("folder") == "src/pkg"
    assert v.get("basename") == "module.tar.gz"
    assert v.get("filename") == "module.tar"
    assert v.get("extension") == "gz"
    assert view("top.txt").get("dirname") == "."
    assert view("top.txt").get("mimeType") == "text/plain"


@pytest.mark.unit
@pytest.mark.parametrize(
    ("rule", "expected"),
    [
        (Rule("path", "!=", "src/app.py"), False),
        (Rule("extension", "oneOf", ["py", "pyi"]), True),
        (Rule("extension", "notOneOf", ["py", "pyi"]), False),
        (Rule("path", "glob", "src/**/*.py"), True),
        (Rule("path", "notGlob", "tests/**"), True),
        (Rule("basename", "fnmatch", "*.py"), True),
        (Rule("path", "regex", "/^SRC/i"), True),
        (Rule("path", "notMatches", r"\.js$"), True),
        (Rule("path", "containsAny", ["zzz", "app"]), True),
        (Rule("path", "containsAll", ["src", "zzz"]), False),
        (Rule("path", "endsWithAny", [".js", ".py"]), True),
        (Rule("path", "notStartsWithAny", ["src", "lib"]), False),
        (Rule("basename", "length", ">5"), True),
        (Rule("basename", "length", 6), True),
        (Rule("size", ">=", "1K"), True),
        (Rule("size", "<", "1K"), False),
        (Rule("path", "isAscii"), True),
        (Rule("path", "isUrl", False), True),
    ],
)
def test_operators(rule: Rule, expected: bool) -> None:
    assert evaluate_rule(view("src/app.py", size=2048), rule) is expected


@pytest.mark.unit
def test_malformed_pattern_fails_only_that_rule() -> None:
    v = view("src/app.py")

    assert evaluate_rule(v, Rule("path", "regex", "([unclosed")) is False
    assert matches(v, [[Rule("path", "regex", "([unclosed")], [Rule("extension", "=", "py")]])


@pytest.mark.unit
def test_contents_are_read_lazily_and_once(tmp_path: Path) -> None:
    target = tmp_path / "config.json"
    target.write_text('{"debug": true}', encoding="utf-8")
    reads: list[Path] = []

    def reader(path: Path) -> bytes:
        reads.append(path)
        return path.read_bytes()

    v = FileView(FileRecord(path="config.json", absolute_path=target), reader=reader)

    assert v.get("extension") == "json"
    assert reads == []
    assert evaluate_rule(v, Rule("contents", "isJson"))
    assert evaluate_rule(v, Rule("contents_slice", "contains", "debug"))
    assert reads == [target]


@pytest.mark.unit
def test_contents_rules_never_match_binary_files(tmp_path: Path) -> None:
    target = tmp_path / "image.png"
    target.write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 16)
    v = FileView(FileRecord(path="image.png", absolute_path=target))

    assert evaluate_rule(v, Rule("contents", "contains", "PNG")) is False
    assert evaluate_rule(v, Rule("contents", "notContains", "PNG")) is False
    assert evaluate_rule(v, Rule("contents_slice", "isAscii", False)) is False


@pytest.mark.unit
@pytest.mark.parametrize("content", ["[Binary file not included]", ""])
def test_contents_rules_never_match_loaded_binary_records(content: str) -> None:
    v = view(
        "logo.png",
        is_binary=True,
        binary_category="image",
        content=content,
        encoding="utf-8",
        content_hash="abc",
    )

    assert evaluate_rule(v, Rule("contents", "notContains", "zzz")) is False
    assert evaluate_rule(v, Rule("contents", "contains", "Binary")) is False
    assert v.is_binary is True


@pytest.mark.unit
def test_evaluation_does_not_mutate_the_record(tmp_path: Path) -> None:
    target = tmp_path / "a.txt"
    target.write_text("hello", encoding="utf-8")
    rec = FileRecord(path="a.txt", absolute_path=target)

    evaluate_rule(FileView(rec), Rule("contents", "=", "hello"))

    assert rec.content is None


@pytest.mark.unit
def test_parse_rule_validates_vocabulary() -> None:
    assert parse_rule(["path", "glob", "*.py"]) == Rule("path", "glob", "*.py")
    assert parse_rule({"field": "size", "operator": ">", "value": "2MB"}) == Rule("size", ">", "2MB")
    assert parse_rule(["contents", "isJson"]) == Rule("contents", "isJson", None)

    with pytest.raises(ConfigurationError, match="Unknown rule field"):
        parse_rule(["colour", "=", "red"])
    with pytest.raises(ConfigurationError, match="Unknown rule operator"):
        parse_rule(["path", "looksLike", "x"])
    with pytest.raises(ConfigurationError, match="needs a value"):
        parse_rule(["path", "contains"])
    with pytest.raises(ConfigurationError):
        parse_rule_group([["path", "=", "x"]])


@pytest.mark.unit
def test_value_parsers() -> None:
    assert parse_size("10K") == 10 * 1024
    assert parse_size("2MB") == 2 * 1024**2
    assert parse_size(12) == 12.0
    assert parse_mtime("1700000000") == 1_700_000_000.0
    assert parse_mtime("2024-01-01T00:00:00+00:00") == 1_704_067_200.0
    assert compile_regex("/abc/i").match("ABC")
    with pytest.raises(ValueError, match="Invalid size"):
        parse_size("ten")


@pytest.mark.unit
def test_rule_engine_needs_contents() -> None:
    assert not RuleEngine([[Rule("path", "glob", "*.py")]]).needs_contents
    assert RuleEngine((), [[Rule("contents", "contains", "SECRET")]]).needs_contents
