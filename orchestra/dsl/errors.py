"""Errors raised while turning workflow syntax into an AST."""

from __future__ import annotations

from orchestra.dsl.tokens import Position


class WorkflowError(Exception):
    """Base class for every error raised by orchestra."""


class LexError(WorkflowError):
    def __init__(self, pos: Position, reason: str) -> None:
        self.pos = pos
        self.reason = reason
        super().__init__(f"{pos}: {reason}")


class ParseError(WorkflowError):
    def __init__(self, pos: Position, expected: str, found: str) -> None:
        self.pos = pos
        self.expected = expected
        self.found = found
        super().__init__(f"{pos}: expected {expected}, found {found}")


class UndefinedTempAgentError(ParseError):
    """A ``$name`` invocation appears without a preceding ``$name := {...}``."""

    def __init__(self, pos: Position, name: str) -> None:
        self.name = name
        super().__init__(pos, f"definition of temp agent '${name}'", f"'${name}'")
