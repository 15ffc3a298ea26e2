"""Path exclusion rules: exact paths and regular expressions."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from .config import fspath


@dataclass
class ExcludeRule:
    """One exclusion rule; ``regex`` is set for pattern rules."""

    pattern: str
    regex: Optional[re.Pattern] = None


class ExcludeRules:
    """A set of exclusion rules checked against source paths."""

    def __init__(self) -> None:
        self._exact: list[ExcludeRule] = []
        self._regex: list[ExcludeRule] = []

    def add(self, pattern: str, is_regex: bool = False) -> ExcludeRule:
        """Add a rule; an invalid regex raises ValueError and drops all rules."""
        if is_regex:
            try:
                compiled = re.compile(pattern)
            except re.error as exc:
                self.clear()
                raise ValueError(f"invalid regex {pattern} ({exc})") from exc
            rule = ExcludeRule(pattern, compiled)
            self._regex.append(rule)
        else:
            rule = ExcludeRule(pattern)
            self._exact.append(rule)
        return rule

    def match(self, directory: Optional[str], name: str) -> Optional[ExcludeRule]:
        """Return the first rule excluding ``directory/name``, or None."""
        path = name if directory is None else f"{directory}/{name}"
        path = fspath(path)
        for rule in self._exact:
            if rule.pattern == path:
                return rule
        for rule in self._regex:
            if rule.regex.search(path):
                return rule
        return None

    def clear(self) -> None:
        """Remove every rule."""
        self._exact.clear()
        self._regex.clear()

    def __len__(self) -> int:
        return len(self._exact) + len(self._regex)