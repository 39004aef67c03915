"""Lexer for the workflow syntax.

Splits raw workflow text into tokens. Multi-character operators (``->``,
``||``, ``~>``, ``:=``) are matched before their single-character prefixes,
string literals are kept whole (``{var}`` markers inside them are preserved
verbatim for later interpolation) and every token records its line/column.

Bracket matching is left to the parser; the lexer only rejects characters
it cannot classify and unterminated literals or conditions.
"""

from __future__ import annotations

import re

from orchestra.dsl.errors import LexError
from orchestra.dsl.tokens import Position, Token, TokenKind

IDENT_RE = re.compile(r"[A-Za-z0-9_-]+")

_OPERATORS: tuple[tuple[str, TokenKind], ...] = (
    ("->", TokenKind.OP_SEQ),
    ("||", TokenKind.OP_PAR),
    ("~>", TokenKind.OP_COND),
    (":=", TokenKind.TEMP_AGENT_ASSIGN),
)

_SINGLE: dict[str, TokenKind] = {
    "[": TokenKind.LBRACKET,
    "]": TokenKind.RBRACKET,
    ":": TokenKind.COLON,
    "}": TokenKind.RBRACE,
    ",": TokenKind.COMMA,
}

_VAR_REF_RE = re.compile(r"\{([A-Za-z0-9_-]+)\}")
_CONDITION_START_RE = re.compile(r"\(\s*if\b")


class _Scanner:
    def __init__(self, source: str) -> None:
        self._src = source
        self._i = 0
        self._line = 1
        self._col = 1
        self.tokens: list[Token] = []

    def _pos(self) -> Position:
        return Position(self._line, self._col, self._i)

    def _advance(self, count: int = 1) -> str:
        text = self._src[self._i : self._i + count]
        for ch in text:
            if ch == "\n":
                self._line += 1
                self._col = 1
            else:
                self._col += 1
        self._i += count
        return text

    def _emit(self, kind: TokenKind, text: str, pos: Position) -> None:
        self.tokens.append(Token(kind, text, pos))

    def scan(self) -> list[Token]:
        src = self._src
        while self._i < len(src):
            ch = src[self._i]
            if ch.isspace():
                self._advance()
                continue

            pos = self._pos()
            for op, kind in _OPERATORS:
                if src.startswith(op, self._i):
                    self._advance(len(op))
                    self._emit(kind, op, pos)
                    break
            else:
                self._scan_other(ch, pos)

        self._emit(TokenKind.EOF, "", self._pos())
        return self.tokens

    def _scan_other(self, ch: str, pos: Position) -> None:
        if ch == '"':
            self._scan_string(pos)
        elif ch == "(":
            self._scan_condition(pos)
        elif ch == "{":
            match = _VAR_REF_RE.match(self._src, self._i)
            if match:
                self._advance(match.end() - self._i)
                self._emit(TokenKind.VAR_REF, match.group(1), pos)
            else:
                self._advance()
                self._emit(TokenKind.LBRACE, "{", pos)
        elif ch in _SINGLE:
            self._advance()
            self._emit(_SINGLE[ch], ch, pos)
        elif ch == "@":
            self._advance()
            name = self._scan_ident()
            if not name:
                raise LexError(pos, "expected a label name after '@'")
            self._emit(TokenKind.LABEL, name, pos)
        elif ch == "$":
            self._advance()
            name = self._scan_ident()
            if not name:
                raise LexError(pos, "expected a temp agent name after '$'")
            self._emit(TokenKind.TEMP_AGENT_REF, name, pos)
        elif IDENT_RE.match(ch):
            self._emit(TokenKind.AGENT_NAME, self._scan_ident(), pos)
        else:
            raise LexError(pos, f"unexpected character {ch!r}")

    def _scan_ident(self) -> str:
        """Read an identifier, stopping before a '-' that starts '->'."""
        start = self._i
        src = self._src
        end = start
        while end < len(src) and IDENT_RE.match(src[end]):
            if src[end] == "-" and src.startswith("->", end):
                break
            end += 1
        return self._advance(end - start)

    def _scan_string(self, pos: Position) -> None:
        close = self._src.find('"', self._i + 1)
        if close == -1:
            raise LexError(pos, "unterminated string literal")
        literal = self._advance(close + 1 - self._i)
        self._emit(TokenKind.STRING_LITERAL, literal[1:-1], pos)

    def _scan_condition(self, pos: Position) -> None:
        match = _CONDITION_START_RE.match(self._src, self._i)
        if not match:
            raise LexError(pos, "'(' must start a condition '(if ...)'")
        depth = 0
        in_string = False
        end = match.end()
        while end < len(self._src):
            ch = self._src[end]
            if ch == '"':
                in_string = not in_string
            elif not in_string and ch == "(":
                depth += 1
            elif not in_string and ch == ")":
                if depth == 0:
                    break
                depth -= 1
            end += 1
        else:
            raise LexError(pos, "unterminated condition, expected ')'")

        expr = self._src[match.end() : end].strip()
        self._advance(end + 1 - self._i)
        self._emit(TokenKind.CONDITION_EXPR, expr, pos)


def tokenize(source: str) -> list[Token]:
    """Split workflow syntax into tokens, ending with a single EOF token."""
    return _Scanner(source).scan()
