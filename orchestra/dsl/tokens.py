"""Token types produced by the workflow lexer."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class TokenKind(StrEnum):
    AGENT_NAME = "agent_name"
    STRING_LITERAL = "string_literal"
    OP_SEQ = "op_seq"
    OP_PAR = "op_par"
    OP_COND = "op_cond"
    LABEL = "label"
    LBRACKET = "lbracket"
    RBRACKET = "rbracket"
    COLON = "colon"
    VAR_REF = "var_ref"
    TEMP_AGENT_REF = "temp_agent_ref"
    TEMP_AGENT_ASSIGN = "temp_agent_assign"
    CONDITION_EXPR = "condition_expr"
    # Only inside temp-agent definition bodies: {base: "...", prompt: "..."}
    LBRACE = "lbrace"
    RBRACE = "rbrace"
    COMMA = "comma"
    EOF = "eof"


@dataclass(frozen=True, slots=True)
class Position:
    """Location of a token in the source (1-based line and column)."""

    line: int = 1
    column: int = 1
    offset: int = 0

    def __str__(self) -> str:
        return f"line {self.line}, column {self.column}"


@dataclass(frozen=True, slots=True)
class Token:
    """A lexical token.

    ``text`` holds the payload without delimiters: the literal content for
    STRING_LITERAL, the bare name for LABEL, VAR_REF and TEMP_AGENT_REF, and
    the expression inside ``(if ...)`` for CONDITION_EXPR.
    """

    kind: TokenKind
    text: str
    pos: Position

    def describe(self) -> str:
        """Human-readable form used in parse error messages."""
        if self.kind == TokenKind.EOF:
            return "end of input"
        if self.kind == TokenKind.STRING_LITERAL:
            return f'string "{self.text}"'
        if self.kind == TokenKind.CONDITION_EXPR:
            return f"'(if {self.text})'"
        if self.kind == TokenKind.LABEL:
            return f"'@{self.text}'"
        if self.kind == TokenKind.TEMP_AGENT_REF:
            return f"'${self.text}'"
        if self.kind == TokenKind.VAR_REF:
            return f"'{{{self.text}}}'"
        return f"'{self.text}'"
