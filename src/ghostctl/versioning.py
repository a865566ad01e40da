"""Semantic-version helpers built on ``semver``.

Ghost and npm speak semver with npm's range dialect (``^1.2``, ``~2``,
``>=12.10.0 <13``, ``1.x || 2.x``). :func:`satisfies` evaluates those ranges so
engine constraints declared in a release's ``package.json`` can be checked
against the local Node and ghostctl versions.
"""
from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

import semver

from .errors import ValidationError

_COERCE_RE = re.compile(r"(\d+)(?:\.(\d+))?(?:\.(\d+))?")
_OPERATOR_GAP_RE = re.compile(r"(<=|>=|<|>|=|\^|~)\s+")
_HYPHEN_RE = re.compile(r"^\s*(\S+)\s+-\s+(\S+)\s*$")
_TOKEN_RE = re.compile(r"^(<=|>=|<|>|=|\^|~)?v?(.*)$")
_WILDCARDS = {"x", "X", "*", ""}


def parse_version(value: str) -> semver.Version:
    """Parse *value* into a :class:`semver.Version` (a leading ``v`` is allowed)."""
    text = str(value).strip()
    if text[:1] in {"v", "V", "="}:
        text = text[1:]
    try:
        return semver.Version.parse(text)
    except (ValueError, TypeError) as exc:
        raise ValidationError(f"Invalid version '{value}'.") from exc


def is_valid(value: str) -> bool:
    """Return True when *value* parses as a semantic version."""
    try:
        parse_version(value)
    except ValidationError:
        return False
    return True


def coerce_version(value: str) -> str | None:
    """Return the first ``major[.minor[.patch]]`` found in *value*, zero padded."""
    match = _COERCE_RE.search(str(value))
    if match is None:
        return None
    major_part, minor_part, patch_part = match.groups()
    return f"{int(major_part)}.{int(minor_part or 0)}.{int(patch_part or 0)}"


def major(value: str) -> int:
    """Return the major component of *value*."""
    return parse_version(value).major


def compare(left: str, right: str) -> int:
    """Compare two versions by semver precedence (-1, 0 or 1)."""
    return parse_version(left).compare(parse_version(right))


def sort_versions(values: Iterable[str], *, reverse: bool = False) -> list[str]:
    """Sort valid semver strings by precedence; invalid entries are dropped."""
    valid = [value for value in values if is_valid(value)]
    return sorted(valid, key=parse_version, reverse=reverse)


@dataclass(frozen=True, slots=True)
class _Comparator:
    operator: str
    version: semver.Version

    def test(self, candidate: semver.Version) -> bool:
        result = candidate.compare(self.version)
        if self.operator == ">=":
            return result >= 0
        if self.operator == ">":
            return result > 0
        if self.operator == "<=":
            return result <= 0
        if self.operator == "<":
            return result < 0
        return result == 0


def satisfies(version: str, spec: str, *, include_prerelease: bool = False) -> bool:
    """Return True when *version* falls inside the npm range *spec*."""
    candidate = parse_version(version)
    for comparator_set in _parse_range(spec):
        if not all(comparator.test(candidate) for comparator in comparator_set):
            continue
        if candidate.prerelease and not include_prerelease:
            # npm only lets prereleases match comparators on the same release tuple.
            if not any(
                comparator.version.prerelease
                and comparator.version.finalize_version() == candidate.finalize_version()
                for comparator in comparator_set
            ):
                continue
        return True
    return False


def _parse_range(spec: str) -> list[list[_Comparator]]:
    sets: list[list[_Comparator]] = []
    for raw_set in str(spec).split("||"):
        raw_set = raw_set.strip()
        hyphen = _HYPHEN_RE.match(raw_set)
        if hyphen:
            sets.append(_hyphen_range(hyphen.group(1), hyphen.group(2)))
            continue
        comparators: list[_Comparator] = []
        for token in _OPERATOR_GAP_RE.sub(r"\1", raw_set).split():
            comparators.extend(_expand_token(token))
        sets.append(comparators)
    return sets


def _partial(text: str) -> tuple[list[int | None], str | None]:
    """Split ``1.2.x-beta`` into ([1, 2, None], "beta")."""
    core, _, prerelease = text.partition("-")
    core = core.split("+", 1)[0]
    parts: list[int | None] = []
    for segment in core.split(".")[:3] if core else []:
        if segment in _WILDCARDS:
            parts.append(None)
            continue
        if not segment.isdigit():
            raise ValidationError(f"Invalid version range component '{text}'.")
        parts.append(int(segment))
    while len(parts) < 3:
        parts.append(None)
    # Anything after the first wildcard is a wildcard as well.
    if None in parts:
        first = parts.index(None)
        parts = parts[:first] + [None] * (3 - first)
    return parts, prerelease or None


def _version(major_part: int, minor_part: int, patch_part: int, pre: str | None = None) -> semver.Version:
    return semver.Version(major_part, minor_part, patch_part, prerelease=pre)


def _expand_token(token: str) -> list[_Comparator]:
    match = _TOKEN_RE.match(token)
    if match is None:  # pragma: no cover - the pattern matches any string
        raise ValidationError(f"Invalid version range '{token}'.")
    operator = match.group(1) or ""
    (ma, mi, pa), pre = _partial(match.group(2))

    if ma is None:
        if operator in {"<", ">"}:
            # "<*" and ">*" match nothing.
            return [_Comparator("<", _version(0, 0, 0, "0"))]
        return []

    if operator == "^":
        low = _version(ma, mi or 0, pa or 0, pre)
        if ma > 0 or mi is None:
            high = _version(ma + 1, 0, 0)
        elif mi > 0 or pa is None:
            high = _version(0, mi + 1, 0)
        else:
            high = _version(0, 0, pa + 1)
        return [_Comparator(">=", low), _Comparator("<", high)]

    if operator == "~":
        low = _version(ma, mi or 0, pa or 0, pre)
        high = _version(ma + 1, 0, 0) if mi is None else _version(ma, mi + 1, 0)
        return [_Comparator(">=", low), _Comparator("<", high)]

    if mi is None or pa is None:
        low = _version(ma, mi or 0, 0)
        high = _version(ma + 1, 0, 0) if mi is None else _version(ma, mi + 1, 0)
        if operator in {"", "="}:
            return [_Comparator(">=", low), _Comparator("<", high)]
        if operator == ">":
            return [_Comparator(">=", high)]
        if operator == ">=":
            return [_Comparator(">=", low)]
        if operator == "<":
            return [_Comparator("<", low)]
        return [_Comparator("<", high)]

    exact = _version(ma, mi, pa, pre)
    return [_Comparator(operator or "=", exact)]


def _hyphen_range(start: str, end: str) -> list[_Comparator]:
    comparators: list[_Comparator] = []
    (ma, mi, pa), pre = _partial(start.lstrip("v"))
    if ma is not None:
        comparators.append(_Comparator(">=", _version(ma, mi or 0, pa or 0, pre)))
    (ma, mi, pa), pre = _partial(end.lstrip("v"))
    if ma is not None:
        if mi is None:
            comparators.append(_Comparator("<", _version(ma + 1, 0, 0)))
        elif pa is None:
            comparators.append(_Comparator("<", _version(ma, mi + 1, 0)))
        else:
            comparators.append(_Comparator("<=", _version(ma, mi, pa, pre)))
    return comparators


__all__ = [
    "coerce_version",
    "compare",
    "is_valid",
    "major",
    "parse_version",
    "satisfies",
    "sort_versions",
]
