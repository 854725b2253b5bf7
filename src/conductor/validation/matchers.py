"""Ordered matcher cascades for tolerant document parsing.

Each cascade is a plain list of named matchers tried in order; the first one
that returns a value wins. Keeping them as data lets every pattern be
exercised on its own.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Matcher(Generic[T]):
    name: str
    apply: Callable[[str], T | None]

    def __call__(self, text: str) -> T | None:
        return self.apply(text)


@dataclass(frozen=True, slots=True)
class MatchResult(Generic[T]):
    matcher: str
    value: T


def first_match(matchers: Sequence[Matcher[T]], text: str) -> MatchResult[T] | None:
    for matcher in matchers:
        value = matcher.apply(text)
        if value is not None:
            return MatchResult(matcher.name, value)
    return None


def section_matcher(name: str, pattern: str, flags: int = re.IGNORECASE) -> Matcher[str]:
    """Matcher returning the first capture group, or None when it is empty."""
    compiled = re.compile(pattern, flags)

    def _apply(text: str) -> str | None:
        match = compiled.search(text)
        if match is None or not match.group(1):
            return None
        return match.group(1)

    return Matcher(name, _apply)


def all_matches_matcher(
    name: str, pattern: str, flags: int = re.IGNORECASE | re.MULTILINE
) -> Matcher[list[re.Match[str]]]:
    """Matcher returning every match of ``pattern``, or None when there are none."""
    compiled = re.compile(pattern, flags)

    def _apply(text: str) -> list[re.Match[str]] | None:
        matches = list(compiled.finditer(text))
        return matches or None

    return Matcher(name, _apply)


def predicate_matcher(name: str, predicate: Callable[[str], bool], value: T) -> Matcher[T]:
    """Matcher yielding ``value`` whenever ``predicate`` holds."""
    return Matcher(name, lambda text: value if predicate(text) else None)
