"""Workflow syntax: lexer, parser and AST."""

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
from orchestra.dsl.errors import LexError, ParseError, UndefinedTempAgentError, WorkflowError
from orchestra.dsl.lexer import tokenize
from orchestra.dsl.parser import parse
from orchestra.dsl.tokens import Position, Token, TokenKind

__all__ = [
    "ASTNode",
    "AgentCall",
    "Checkpoint",
    "Conditional",
    "LexError",
    "Parallel",
    "ParseError",
    "Position",
    "Sequence",
    "Subgraph",
    "TempAgentDef",
    "Token",
    "TokenKind",
    "UndefinedTempAgentError",
    "Workflow",
    "WorkflowError",
    "parse",
    "tokenize",
]
