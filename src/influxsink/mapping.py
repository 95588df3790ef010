"""Translation of internal dot-separated metric paths to measurements.

A path mapping turns a path such as ``input.kafka.received`` into a
measurement name plus tags, or drops the metric entirely. Mappings are
written as ordered rules, one per line:

    # comments and blank lines are ignored
    input\\.(?P<label>[^.]+)\\.received -> input_received
    debug\\..* -> drop
    (?P<_prefix>[^.]+)\\.(?P<stage>.+) -> {_prefix}_total

Rules are matched with ``re.fullmatch`` in order and the first match wins.
Named groups become tags, except groups starting with ``_`` which are only
usable in the template. The template is a ``str.format`` string over the
named groups and ``{path}``; ``drop`` (or an empty result) drops the
metric. Paths matching no rule pass through unchanged without tags.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from influxsink.errors import PathMappingError

logger = logging.getLogger(__name__)

DROP = "drop"

_RULE_LINE = re.compile(r"^(?P<pattern>.+?)\s+->(?:\s+(?P<target>.*))?\s*$")


MappedPath = tuple[str, tuple[str, ...], tuple[str, ...]]


@runtime_checkable
class PathMapping(Protocol):
    """Capability mapping a path to a measurement name and tag set.

    An empty name means the metric must be dropped silently.
    """

    def map_path(self, path: str) -> MappedPath:
        """Map a path to (name, tag_keys, tag_values)."""
        ...

    def map_path_no_tags(self, path: str) -> str:
        """Map a path to a name, discarding any tags."""
        ...


class IdentityPathMapping:
    """Uses every path unchanged, without tags."""

    def map_path(self, path: str) -> MappedPath:
        return path, (), ()

    def map_path_no_tags(self, path: str) -> str:
        return path


@dataclass(frozen=True)
class MappingRule:
    """A single compiled mapping rule.

    Attributes:
        pattern: Regular expression matched against the whole path.
        template: Name template, None when matching paths are dropped.
        tag_names: Named groups emitted as tags, sorted.
    """

    pattern: re.Pattern[str]
    template: str | None
    tag_names: tuple[str, ...]

    @classmethod
    def parse(cls, line: str, lineno: int | None = None) -> "MappingRule":
        """Compile one ``<regex> -> <template>`` rule.

        Raises:
            PathMappingError: If the rule is malformed.
        """
        match = _RULE_LINE.match(line.strip())
        if match is None:
            raise PathMappingError(f"expected '<pattern> -> <target>', got {line!r}", lineno)

        try:
            pattern = re.compile(match.group("pattern"))
        except re.error as e:
            raise PathMappingError(f"invalid pattern: {e}", lineno) from e

        groups = tuple(pattern.groupindex)
        if "path" in groups:
            raise PathMappingError("group name 'path' is reserved", lineno)

        target = (match.group("target") or "").strip()
        if not target or target == DROP:
            return cls(pattern=pattern, template=None, tag_names=())

        try:
            target.format(path="", **{name: "" for name in groups})
        except (KeyError, IndexError, AttributeError, TypeError, ValueError) as e:
            raise PathMappingError(f"invalid template {target!r}: {e!r}", lineno) from e

        tag_names = tuple(sorted(name for name in groups if not name.startswith("_")))
        return cls(pattern=pattern, template=target, tag_names=tag_names)

    def apply(self, path: str) -> MappedPath | None:
        """Apply the rule, returning None if the path does not match."""
        match = self.pattern.fullmatch(path)
        if match is None:
            return None
        if self.template is None:
            return "", (), ()

        groups = {name: value or "" for name, value in match.groupdict().items()}
        name = self.template.format(path=path, **groups)
        return name, self.tag_names, tuple(groups[tag] for tag in self.tag_names)


class RulePathMapping:
    """Ordered list of mapping rules.

    Example:
        >>> mapping = RulePathMapping.parse(
        ...     "input\\\\.(?P<label>[^.]+)\\\\.received -> input_received"
        ... )
        >>> mapping.map_path("input.foo.received")
        ('input_received', ('label',), ('foo',))
    """

    def __init__(self, rules: list[MappingRule]) -> None:
        self._rules = list(rules)

    @classmethod
    def parse(cls, expression: str) -> "RulePathMapping":
        """Parse a multi-line rule expression.

        Raises:
            PathMappingError: If any rule is malformed.
        """
        rules = []
        for lineno, line in enumerate(expression.splitlines(), start=1):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            rules.append(MappingRule.parse(stripped, lineno))
        return cls(rules)

    @property
    def rules(self) -> list[MappingRule]:
        return list(self._rules)

    def map_path(self, path: str) -> MappedPath:
        for rule in self._rules:
            result = rule.apply(path)
            if result is not None:
                return result
        return path, (), ()

    def map_path_no_tags(self, path: str) -> str:
        return self.map_path(path)[0]

    def __len__(self) -> int:
        return len(self._rules)


def create_path_mapping(expression: str) -> PathMapping:
    """Build the mapping for a configured expression.

    An empty expression maps every path to itself.

    Raises:
        PathMappingError: If the expression is malformed.
    """
    if not expression.strip():
        return IdentityPathMapping()
    mapping = RulePathMapping.parse(expression)
    logger.debug(f"Compiled path mapping with {len(mapping)} rules")
    return mapping
