#!/usr/bin/env python3
"""
Field Telemetry Ingest - Topic Router

Classifies an MQTT topic into a record kind using the broker's wildcard rules:
- '+' matches exactly one topic level
- '#' matches the remaining levels (including none); it must be the last level

Patterns are compiled once into token lists and tested in configuration order;
the first match wins.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from schema import RecordKind

logger = logging.getLogger(__name__)

SINGLE_LEVEL = "+"
MULTI_LEVEL = "#"


@dataclass(frozen=True)
class TopicPattern:
    """A subscription pattern compiled into literal-or-wildcard tokens."""
    pattern: str
    tokens: Tuple[str, ...]

    @classmethod
    def compile(cls, pattern: str) -> "TopicPattern":
        if not pattern:
            raise ValueError("Topic pattern must not be empty")

        tokens = tuple(pattern.split("/"))
        for index, token in enumerate(tokens):
            if MULTI_LEVEL in token:
                if token != MULTI_LEVEL or index != len(tokens) - 1:
                    raise ValueError(f"'#' must be the last level on its own: {pattern!r}")
            elif SINGLE_LEVEL in token and token != SINGLE_LEVEL:
                raise ValueError(f"'+' must occupy a whole level: {pattern!r}")
        return cls(pattern=pattern, tokens=tokens)

    def matches(self, topic: str) -> bool:
        levels = topic.split("/")

        # Wildcards never match topics reserved by the broker ($SYS/...)
        if topic.startswith("$") and self.tokens[0] in (SINGLE_LEVEL, MULTI_LEVEL):
            return False

        for index, token in enumerate(self.tokens):
            if token == MULTI_LEVEL:
                return True
            if index >= len(levels):
                return False
            if token != SINGLE_LEVEL and token != levels[index]:
                return False
        return len(levels) == len(self.tokens)


class TopicRouter:
    """Ordered table of compiled patterns mapped to record kinds."""

    def __init__(self, patterns: Dict[str, Union[RecordKind, str]]):
        self._routes: List[Tuple[TopicPattern, RecordKind]] = [
            (TopicPattern.compile(pattern), RecordKind(kind))
            for pattern, kind in patterns.items()
        ]
        logger.debug(f"Topic router configured with {len(self._routes)} patterns")

    @property
    def subscriptions(self) -> List[str]:
        """Patterns to subscribe to, in routing order."""
        return [compiled.pattern for compiled, _ in self._routes]

    def route(self, topic: str) -> Optional[RecordKind]:
        """Return the record kind of the first pattern matching topic, or None."""
        for compiled, kind in self._routes:
            if compiled.matches(topic):
                return kind
        return None
