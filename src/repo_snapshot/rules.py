"""Declarative rule evaluation.

A rule is a ``(field, operator, value)`` triple. Rules in a set are ANDed,
sets in a group are ORed. A global exclude group wins over the rule group,
and the ``always`` lists win over both (``exclude`` before ``include``).
"""

from __future__ import annotations

import json
import mimetypes
import re
import uuid
from datetime import datetime
from functools import cached_property
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any, NamedTuple
from urllib.parse import urlparse

from repo_snapshot.binary_detector import detect_bytes
from repo_snapshot.exceptions import ConfigurationError
from repo_snapshot.file_manipulation import match_fnmatch, match_glob
from repo_snapshot.logging import logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from repo_snapshot.config import FileRecord

CONTENTS_SLICE_CHARS = 256

FIELDS = frozenset(
    {
        "path",
        "dirname",
        "folder",
        "basename",
        "filename",
        "extension",
        "contents",
        "contents_slice",
        "size",
        "mtime",
        "mimeType",
    },
)
CONTENT_FIELDS = frozenset({"contents", "contents_slice"})
NUMERIC_FIELDS = frozenset({"size", "mtime"})

_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "k": 1024,
    "kb": 1024,
    "m": 1024**2,
    "mb": 1024**2,
    "g": 1024**3,
    "gb": 1024**3,
}
_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")
_LENGTH_RE = re.compile(r"^\s*(>=|<=|==|!=|=|>|<)?\s*(\d+)\s*$")
_ULID_RE = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$", re.IGNORECASE)
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}
_DELIMITED_RE = re.compile(r"^/(.*)/([imsxu]*)$", re.DOTALL)


class Rule(NamedTuple):
    field: str
    operator: str
    value: Any = None


RuleSet = list[Rule]
RuleGroup = list[RuleSet]


class FileView:
    """Read-only view over a record that resolves rule fields on demand.

    ``contents`` is read at most once, and only when a rule references it.
    """

    def __init__(self, record: FileRecord, reader: Callable[[Path], bytes] | None = None) -> None:
        self.record = record
        self._reader = reader or Path.read_bytes

    @property
    def path(self) -> str:
        return self.record.path

    @cached_property
    def _posix(self) -> PurePosixPath:
        return PurePosixPath(self.record.path)

    @cached_property
    def _raw(self) -> tuple[str | None, bool]:
        content = self.record.content
        # already loaded and classified: placeholder text is not file contents
        if self.record.is_binary and (self.record.content_hash is not None or content is not None):
            return None, True
        if isinstance(content, str) and self.record.encoding == "utf-8":
            return content, False
        if isinstance(content, bytes):
            data = content
        else:
            try:
                data = self._reader(self.record.absolute_path)
            except OSError as e:
                logger.debug("cannot read contents for rules", path=self.record.path, error=str(e))
                return None, False
        detection = detect_bytes(data[:8192], self._posix.suffix)
        if detection.is_binary:
            return None, True
        return data.decode("utf-8", errors="replace"), False

    @property
    def is_binary(self) -> bool:
        return self._raw[1]

    @property
    def contents(self) -> str | None:
        """Full text, or None for binary content."""
        return self._raw[0]

    def get(self, field: str) -> Any:  # noqa: ANN401, PLR0911
        """Return the value of a rule field.

        Raises:
            ConfigurationError: for an unknown field.
        """
        match field:
            case "path":
                return self.record.path
            case "dirname" | "folder":
                return str(self._posix.parent)
            case "basename":
                return self._posix.name
            case "filename":
                return self._posix.stem
            case "extension":
                return self._posix.suffix.removeprefix(".")
            case "size":
                return self.record.size
            case "mtime":
                return self.record.mtime
            case "mimeType":
                return mimetypes.guess_type(self._posix.name, strict=False)[0] or ""
            case "contents":
                return self.contents
            case "contents_slice":
                text = self.contents
                return None if text is None else text[:CONTENTS_SLICE_CHARS]
        raise ConfigurationError(message=f"Unknown rule field: {field}")


def parse_size(value: Any) -> float:  # noqa: ANN401
    """Parse ``1024``, ``"10K"`` or ``"2MB"`` into a number of bytes.

    Raises:
        ValueError: if the value is not a size.
    """
    if isinstance(value, int | float):
        return float(value)
    m = _SIZE_RE.match(str(value))
    if not m or m.group(2).lower() not in _SIZE_UNITS:
        msg = f"Invalid size: {value!r}"
        raise ValueError(msg)
    return float(m.group(1)) * _SIZE_UNITS[m.group(2).lower()]


def parse_mtime(value: Any) -> float:  # noqa: ANN401
    """Parse POSIX seconds or an ISO-8601 date into POSIX seconds.

    Raises:
        ValueError: if the value is neither.
    """
    if isinstance(value, int | float):
        return float(value)
    try:
        return float(value)
    except ValueError:
        return datetime.fromisoformat(str(value)).timestamp()


def _number_for(field: str, value: Any) -> float:  # noqa: ANN401
    if field == "size":
        return parse_size(value)
    if field == "mtime":
        return parse_mtime(value)
    return float(value)


def compile_regex(pattern: str) -> re.Pattern[str]:
    """Compile a plain or ``/pattern/flags`` delimited regular expression.

    Raises:
        re.error: if the pattern is malformed.
    """
    m = _DELIMITED_RE.match(pattern)
    if not m:
        return re.compile(pattern)
    flags = 0
    for flag in m.group(2):
        flags |= _REGEX_FLAGS.get(flag, 0)
    return re.compile(m.group(1), flags)


def _as_list(value: Any) -> list[str]:  # noqa: ANN401
    if isinstance(value, list | tuple | set | frozenset):
        return [str(v) for v in value]
    return [str(value)]


def _is_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def _is_url(text: str) -> bool:
    parsed = urlparse(text.strip())
    return parsed.scheme in {"http", "https", "ftp", "ftps"} and bool(parsed.netloc)


def _is_uuid(text: str) -> bool:
    try:
        uuid.UUID(text.strip())
    except ValueError:
        return False
    return True


def _length(actual: int, value: Any) -> bool:  # noqa: ANN401
    if isinstance(value, int):
        return actual == value
    m = _LENGTH_RE.match(str(value))
    if not m:
        msg = f"Invalid length expression: {value!r}"
        raise ValueError(msg)
    op, expected = m.group(1) or "=", int(m.group(2))
    return _ORDERING[op](actual, expected)


_ORDERING: dict[str, Callable[[Any, Any], bool]] = {
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    "=": lambda a, b: a == b,
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
}

_PREDICATES: dict[str, Callable[[str], bool]] = {
    "isAscii": str.isascii,
    "isJson": _is_json,
    "isUrl": _is_url,
    "isUuid": _is_uuid,
    "isUlid": lambda text: _ULID_RE.match(text.strip()) is not None,
}

_STRING_OPS: dict[str, Callable[[str, Any], bool]] = {
    "contains": lambda s, v: str(v) in s,
    "startsWith": lambda s, v: s.startswith(str(v)),
    "endsWith": lambda s, v: s.endswith(str(v)),
    "containsAny": lambda s, v: any(x in s for x in _as_list(v)),
    "containsAll": lambda s, v: all(x in s for x in _as_list(v)),
    "startsWithAny": lambda s, v: any(s.startswith(x) for x in _as_list(v)),
    "endsWithAny": lambda s, v: any(s.endswith(x) for x in _as_list(v)),
    "glob": lambda s, v: match_glob(s, str(v)),
    "fnmatch": lambda s, v: match_fnmatch(s, str(v)),
    "regex": lambda s, v: compile_regex(str(v)).search(s) is not None,
    "matches": lambda s, v: compile_regex(str(v)).search(s) is not None,
}

# negated operator -> positive operator
_NEGATIONS = {
    "!=": "=",
    "isNot": "=",
    "notOneOf": "oneOf",
    "notGlob": "glob",
    "notFnmatch": "fnmatch",
    "notRegex": "regex",
    "notMatches": "matches",
    "notContains": "contains",
    "notStartsWith": "startsWith",
    "notEndsWith": "endsWith",
    "notContainsAny": "containsAny",
    "notStartsWithAny": "startsWithAny",
    "notEndsWithAny": "endsWithAny",
}

OPERATORS = frozenset(
    {"=", "==", "is", ">", ">=", "<", "<=", "oneOf", "length"}
    | set(_PREDICATES)
    | set(_STRING_OPS)
    | set(_NEGATIONS),
)
_VALUELESS = frozenset(_PREDICATES)


def parse_rule(raw: Any, source: str = "") -> Rule:  # noqa: ANN401
    """Validate a raw ``[field, operator, value]`` entry.

    Args:
        raw: list, tuple or mapping with ``field``/``operator``/``value`` keys.
        source: profile the rule comes from, for error messages.

    Raises:
        ConfigurationError: if the shape, field or operator is invalid.

    Returns:
        Rule: the validated rule.
    """
    if isinstance(raw, dict):
        raw = [raw.get("field"), raw.get("operator"), raw.get("value")]
    if not isinstance(raw, list | tuple) or len(raw) not in {2, 3}:
        raise ConfigurationError(message=f"Invalid rule {raw!r}: expected [field, operator, value]", source=source)
    field, operator = raw[0], raw[1]
    value = raw[2] if len(raw) == 3 else None  # noqa: PLR2004
    if field not in FIELDS:
        raise ConfigurationError(message=f"Unknown rule field {field!r}", source=source)
    if operator not in OPERATORS:
        raise ConfigurationError(message=f"Unknown rule operator {operator!r}", source=source)
    if len(raw) == 2 and operator not in _VALUELESS:  # noqa: PLR2004
        raise ConfigurationError(message=f"Operator {operator!r} needs a value", source=source)
    return Rule(field, operator, value)


def parse_rule_group(raw: Any, source: str = "") -> RuleGroup:  # noqa: ANN401
    """Validate a list of rule sets.

    Raises:
        ConfigurationError: if the group is not a list of lists of rules.
    """
    if raw is None:
        return []
    if not isinstance(raw, list | tuple):
        raise ConfigurationError(message=f"Rule group must be a list, got {type(raw).__name__}", source=source)
    group: RuleGroup = []
    for rule_set in raw:
        if not isinstance(rule_set, list | tuple):
            raise ConfigurationError(message=f"Rule set must be a list, got {rule_set!r}", source=source)
        group.append([parse_rule(r, source) for r in rule_set])
    return group


def _evaluate(rule: Rule, actual: Any) -> bool:  # noqa: ANN401, PLR0911
    field, operator, value = rule
    if operator in _NEGATIONS:
        return not _evaluate(Rule(field, _NEGATIONS[operator], value), actual)
    if operator in _PREDICATES:
        result = _PREDICATES[operator](str(actual))
        return not result if value is False or str(value).lower() == "false" else result
    if operator == "length":
        return _length(len(str(actual)), value)
    if field in NUMERIC_FIELDS:
        if operator in {"=", "==", "is"}:
            return float(actual) == _number_for(field, value)
        if operator in _ORDERING:
            return _ORDERING[operator](float(actual), _number_for(field, value))
        if operator == "oneOf":
            return float(actual) in {_number_for(field, v) for v in _as_list(value)}
    text = str(actual)
    if operator in {"=", "==", "is"}:
        return text == str(value)
    if operator in _ORDERING:
        return _ORDERING[operator](float(text), float(value))
    if operator == "oneOf":
        return text in _as_list(value)
    return _STRING_OPS[operator](text, value)


def evaluate_rule(view: FileView, rule: Rule) -> bool:
    """Evaluate one rule against a file view.

    A malformed pattern or value fails only this rule. Rules on the contents
    of a binary file never match.

    Returns:
        bool: whether the rule matches.
    """
    actual = view.get(rule.field)
    if actual is None and rule.field in CONTENT_FIELDS:
        return False
    try:
        return _evaluate(rule, actual)
    except (re.error, ValueError, TypeError) as e:
        logger.debug("rule evaluation failed", path=view.path, rule=list(rule), error=str(e))
        return False


def matches_rule_set(view: FileView, rule_set: Iterable[Rule]) -> bool:
    """A rule set matches when every rule matches."""
    return all(evaluate_rule(view, rule) for rule in rule_set)


def matches_any_set(view: FileView, group: Iterable[Iterable[Rule]]) -> bool:
    """A rule group matches when any of its sets matches."""
    return any(matches_rule_set(view, rule_set) for rule_set in group)


def matches(
    view: FileView,
    rule_group: Sequence[Sequence[Rule]],
    global_exclude_group: Sequence[Sequence[Rule]] = (),
    always: Any = None,  # noqa: ANN401
) -> bool:
    """Decide whether a file is selected.

    Args:
        view: the file to test.
        rule_group: OR of AND-sets; empty means every file.
        global_exclude_group: sets that exclude a file whatever ``rule_group`` says.
        always: object or mapping with ``include``/``exclude`` path lists.

    Returns:
        bool: True if the file is selected.
    """
    include, exclude = _always_lists(always)
    if view.path in exclude:
        return False
    if view.path in include:
        return True
    if matches_any_set(view, global_exclude_group):
        return False
    if not rule_group:
        return True
    return matches_any_set(view, rule_group)


def _always_lists(always: Any) -> tuple[frozenset[str], frozenset[str]]:  # noqa: ANN401
    if always is None:
        return frozenset(), frozenset()
    if isinstance(always, dict):
        include, exclude = always.get("include") or [], always.get("exclude") or []
    else:
        include, exclude = always.include, always.exclude
    return normalize_paths(include), normalize_paths(exclude)


def normalize_paths(paths: Iterable[str]) -> frozenset[str]:
    """Normalize ``always`` entries to relative POSIX paths."""
    return frozenset(p.strip().replace("\\", "/").removeprefix("./") for p in paths if p and p.strip())


class RuleEngine:
    """Rule groups of a resolved profile bound together for repeated evaluation."""

    def __init__(
        self,
        rules: Sequence[Sequence[Rule]] = (),
        global_exclude_rules: Sequence[Sequence[Rule]] = (),
        always: Any = None,  # noqa: ANN401
    ) -> None:
        self.rules = [list(s) for s in rules]
        self.global_exclude_rules = [list(s) for s in global_exclude_rules]
        self.always = always

    @classmethod
    def from_profile(cls, profile: Any) -> RuleEngine:  # noqa: ANN401
        return cls(profile.rules, profile.global_exclude_rules, profile.always)

    @property
    def needs_contents(self) -> bool:
        """Whether any rule reads file contents."""
        return any(
            rule.field in CONTENT_FIELDS for group in (self.rules, self.global_exclude_rules) for s in group for rule in s
        )

    def matches(self, view: FileView) -> bool:
        return matches(view, self.rules, self.global_exclude_rules, self.always)
