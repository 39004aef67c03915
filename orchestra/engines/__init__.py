"""Executor and condition-interpreter collaborator interfaces."""

from orchestra.engines.types import ConditionInterpreter, ExecutorProtocol, KeywordConditionInterpreter

__all__ = ["ConditionInterpreter", "ExecutorProtocol", "KeywordConditionInterpreter"]
