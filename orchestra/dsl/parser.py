"""Recursive-descent parser for workflow syntax.

Grammar (loosest binder first)::

    workflow     := tempAgentDef* expr
    tempAgentDef := "$" ident ":=" "{" field ("," field)* "}"
    expr         := cond
    cond         := seq ( "(if" ["!"] text ")" [":" ident] "~>" [seq] )*
    seq          := par ( "->" par )*
    par          := atom ( "||" atom )*
    atom         := agentCall | checkpoint | "[" expr "]"
    agentCall    := ( ident (":" ident)* | "$" ident ) [":" (string | "{" var "}") [":" ident]]
    checkpoint   := "@" ident [":" string]

So ``[...]`` binds tightest, then ``||``, then ``->``, then ``~>``.
"""

from __future__ import annotations

from collections.abc import Mapping

from orchestra.dsl.ast import (
    AgentCall,
    ASTNode,
    Checkpoint,
    Conditional,
    Parallel,
    Sequence,
    Subgraph,
    TempAgentDef,
    Workflow,
)
from orchestra.dsl.errors import ParseError, UndefinedTempAgentError
from orchestra.dsl.lexer import IDENT_RE
from orchestra.dsl.tokens import Token, TokenKind

_TEMP_AGENT_FIELDS = frozenset({"base", "prompt", "model"})
_REQUIRED_TEMP_AGENT_FIELDS = ("base", "prompt")

# Tokens that end a conditional chain, leaving a bind-only condition targetless.
_CONDITION_TARGET_END = frozenset({TokenKind.CONDITION_EXPR, TokenKind.RBRACKET, TokenKind.EOF})


class Parser:
    def __init__(
        self,
        tokens: list[Token],
        temp_agents: Mapping[str, TempAgentDef] | None = None,
    ) -> None:
        if not tokens or tokens[-1].kind != TokenKind.EOF:
            raise ValueError("token stream must end with an EOF token")
        self._tokens = tokens
        self._i = 0
        self._temp_agents: dict[str, TempAgentDef] = dict(temp_agents or {})

    # -- token helpers -----------------------------------------------------

    def _peek(self, ahead: int = 0) -> Token:
        index = min(self._i + ahead, len(self._tokens) - 1)
        return self._tokens[index]

    def _at(self, kind: TokenKind, ahead: int = 0) -> bool:
        return self._peek(ahead).kind == kind

    def _advance(self) -> Token:
        tok = self._peek()
        if tok.kind != TokenKind.EOF:
            self._i += 1
        return tok

    def _expect(self, kind: TokenKind, expected: str) -> Token:
        tok = self._peek()
        if tok.kind != kind:
            raise ParseError(tok.pos, expected, tok.describe())
        return self._advance()

    def _expect_ident(self, what: str) -> str:
        tok = self._peek()
        if tok.kind != TokenKind.AGENT_NAME or not IDENT_RE.fullmatch(tok.text):
            raise ParseError(tok.pos, f"{what} ([a-zA-Z0-9_-]+)", tok.describe())
        return self._advance().text

    # -- grammar -----------------------------------------------------------

    def parse(self) -> Workflow:
        definitions: list[TempAgentDef] = []
        while self._at(TokenKind.TEMP_AGENT_REF) and self._at(TokenKind.TEMP_AGENT_ASSIGN, 1):
            definitions.append(self._parse_definition())

        if self._at(TokenKind.EOF):
            tok = self._peek()
            raise ParseError(tok.pos, "a workflow expression", tok.describe())

        body = self._parse_expr()
        tok = self._peek()
        if tok.kind == TokenKind.RBRACKET:
            raise ParseError(tok.pos, "end of input (unmatched ']')", tok.describe())
        if tok.kind != TokenKind.EOF:
            raise ParseError(tok.pos, "'->', '||', '(if ...)' or end of input", tok.describe())
        return Workflow(tuple(definitions), body)

    def _parse_definition(self) -> TempAgentDef:
        ref = self._advance()
        self._advance()  # :=
        if ref.text in self._temp_agents:
            raise ParseError(ref.pos, f"a new temp agent name (duplicate '${ref.text}')", ref.describe())
        self._expect(TokenKind.LBRACE, "'{' opening the temp agent definition")

        fields: dict[str, str] = {}
        while True:
            key_tok = self._peek()
            key = self._expect_ident("a definition field name")
            if key not in _TEMP_AGENT_FIELDS:
                raise ParseError(key_tok.pos, "one of base, prompt, model", f"'{key}'")
            self._expect(TokenKind.COLON, f"':' after '{key}'")
            value_tok = self._peek()
            if value_tok.kind not in (TokenKind.STRING_LITERAL, TokenKind.AGENT_NAME):
                raise ParseError(value_tok.pos, f"a value for '{key}'", value_tok.describe())
            fields[key] = self._advance().text
            if self._at(TokenKind.COMMA):
                self._advance()
                if self._at(TokenKind.RBRACE):
                    break
                continue
            break
        self._expect(TokenKind.RBRACE, "'}' closing the temp agent definition")

        for required in _REQUIRED_TEMP_AGENT_FIELDS:
            if not fields.get(required):
                raise ParseError(ref.pos, f"field '{required}' in '${ref.text}'", "no such field")

        definition = TempAgentDef(
            name=ref.text,
            base=fields["base"],
            prompt=fields["prompt"],
            model=fields.get("model"),
            pos=ref.pos,
        )
        self._temp_agents[ref.text] = definition
        return definition

    def _parse_expr(self) -> ASTNode:
        return self._parse_cond()

    def _parse_cond(self) -> ASTNode:
        tok = self._peek()
        if tok.kind in (TokenKind.CONDITION_EXPR, TokenKind.OP_COND):
            raise ParseError(tok.pos, "an operand before the condition", tok.describe())

        node = self._parse_seq()
        while self._at(TokenKind.CONDITION_EXPR):
            cond_tok = self._advance()
            text = cond_tok.text
            negate = text.startswith("!")
            if negate:
                text = text[1:].strip()
            if not text:
                raise ParseError(cond_tok.pos, "a condition expression", cond_tok.describe())

            bind_var = None
            if self._at(TokenKind.COLON):
                self._advance()
                bind_var = self._expect_ident("a variable name")
            self._expect(TokenKind.OP_COND, "'~>' after the condition")

            target = None
            if self._peek().kind in _CONDITION_TARGET_END:
                if bind_var is None:
                    after = self._peek()
                    raise ParseError(after.pos, "a target after '~>'", after.describe())
            else:
                target = self._parse_seq()

            node = Conditional(
                source=node,
                predicate=text,
                target=target,
                bind_var=bind_var,
                negate=negate,
                pos=cond_tok.pos,
            )

        if self._at(TokenKind.OP_COND):
            tok = self._peek()
            raise ParseError(tok.pos, "'(if ...)' before '~>'", tok.describe())
        return node

    def _parse_seq(self) -> ASTNode:
        node = self._parse_par()
        while self._at(TokenKind.OP_SEQ):
            self._advance()
            node = Sequence(node, self._parse_par())
        return node

    def _parse_par(self) -> ASTNode:
        branches = [self._parse_atom()]
        while self._at(TokenKind.OP_PAR):
            self._advance()
            branches.append(self._parse_atom())
        if len(branches) == 1:
            return branches[0]
        return Parallel(tuple(branches))

    def _parse_atom(self) -> ASTNode:
        tok = self._peek()
        if tok.kind == TokenKind.LBRACKET:
            self._advance()
            body = self._parse_expr()
            closing = self._peek()
            if closing.kind != TokenKind.RBRACKET:
                raise ParseError(closing.pos, f"']' closing the '[' at {tok.pos}", closing.describe())
            self._advance()
            return Subgraph(body, closed=True, pos=tok.pos)
        if tok.kind == TokenKind.LABEL:
            return self._parse_checkpoint()
        if tok.kind == TokenKind.AGENT_NAME:
            return self._parse_agent_call()
        if tok.kind == TokenKind.TEMP_AGENT_REF:
            return self._parse_temp_agent_call()
        raise ParseError(tok.pos, "an agent call, '@label' or '['", tok.describe())

    def _parse_checkpoint(self) -> Checkpoint:
        tok = self._advance()
        prompt = None
        if self._at(TokenKind.COLON) and self._at(TokenKind.STRING_LITERAL, 1):
            self._advance()
            prompt = self._advance().text
        return Checkpoint(tok.text, prompt, pos=tok.pos)

    def _parse_agent_call(self) -> AgentCall:
        first = self._advance()
        name = first.text
        # Namespaced agents: plugin:agent:"instruction"
        while self._at(TokenKind.COLON) and self._at(TokenKind.AGENT_NAME, 1):
            self._advance()
            name = f"{name}:{self._advance().text}"
        if not self._at(TokenKind.COLON):
            return AgentCall(name, "", None, temp=False, pos=first.pos)
        instruction, output_var = self._parse_invocation_tail(name)
        return AgentCall(name, instruction, output_var, temp=False, pos=first.pos)

    def _parse_temp_agent_call(self) -> AgentCall:
        tok = self._advance()
        if tok.text not in self._temp_agents:
            raise UndefinedTempAgentError(tok.pos, tok.text)
        if self._at(TokenKind.TEMP_AGENT_ASSIGN):
            after = self._peek()
            raise ParseError(
                after.pos,
                "temp agent definitions before the workflow expression",
                after.describe(),
            )
        if not self._at(TokenKind.COLON):
            return AgentCall(tok.text, "", None, temp=True, pos=tok.pos)
        instruction, output_var = self._parse_invocation_tail(f"${tok.text}")
        return AgentCall(tok.text, instruction, output_var, temp=True, pos=tok.pos)

    def _parse_invocation_tail(self, name: str) -> tuple[str, str | None]:
        self._expect(TokenKind.COLON, f"':' after agent '{name}'")
        tok = self._peek()
        if tok.kind == TokenKind.STRING_LITERAL:
            instruction = self._advance().text
        elif tok.kind == TokenKind.VAR_REF:
            instruction = "{" + self._advance().text + "}"
        else:
            raise ParseError(tok.pos, f"an instruction string for '{name}'", tok.describe())

        output_var = None
        if self._at(TokenKind.COLON):
            self._advance()
            output_var = self._expect_ident("an output variable name")
        return instruction, output_var


def parse(
    tokens: list[Token],
    temp_agents: Mapping[str, TempAgentDef] | None = None,
) -> Workflow:
    """Parse a token stream (as returned by ``tokenize``) into a Workflow AST.

    ``temp_agents`` pre-declares definitions made elsewhere, so a fragment
    parsed during a run may invoke the workflow's temp agents.
    """
    return Parser(tokens, temp_agents).parse()
