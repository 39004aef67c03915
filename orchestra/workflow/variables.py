"""Workflow-scoped variable store.

Variables hold captured agent outputs (``agent:"...":var``) and condition
results (``(if ...):var``). A variable is written when its producing node
completes; only that producer may write it again (retry and loop
re-execution overwrite the prior value). Consumers only read.

The store is owned by the scheduler task, which is the only writer, so it
needs no locking.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType

from loguru import logger

from orchestra.workflow.errors import UndefinedVariableError, VariableConflictError
from orchestra.workflow.models import NodeID
from orchestra.workflow.validator import VAR_REF_RE

DEFAULT_MAX_VALUE_LENGTH = 50_000

_FALSY = frozenset({"", "false", "0", "no", "off", "none"})


def is_truthy(value: str) -> bool:
    """Interpret a captured textual value as a boolean."""
    return value.strip().lower() not in _FALSY


class VariableStore:
    def __init__(self, max_value_length: int = DEFAULT_MAX_VALUE_LENGTH) -> None:
        self._values: dict[str, str] = {}
        self._producers: dict[str, NodeID | None] = {}
        self._max_value_length = max_value_length

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __len__(self) -> int:
        return len(self._values)

    def get(self, name: str, default: str | None = None) -> str | None:
        return self._values.get(name, default)

    def producer(self, name: str) -> NodeID | None:
        return self._producers.get(name)

    def bind(self, name: str, value: str, producer: NodeID) -> None:
        """Capture ``value`` as ``name``.

        Raises VariableConflictError if another node already produced it.
        Values carried over without a producer (after an edit) may be
        overwritten by any node.
        """
        if name in self._values:
            previous = self._producers.get(name)
            if previous is not None and previous != producer:
                raise VariableConflictError(name, previous, producer)
            logger.debug("Rebinding variable '{}' (node {})", name, producer)

        if len(value) > self._max_value_length:
            value = value[: self._max_value_length] + "\n... [truncated]"
        self._values[name] = value
        self._producers[name] = producer

    def interpolate(self, template: str) -> str:
        """Replace every ``{name}`` in ``template`` in a single pass.

        Values are inserted verbatim and never re-expanded, so an output that
        itself contains ``{other}`` cannot pull in further variables.
        """
        missing = [name for name in VAR_REF_RE.findall(template) if name not in self._values]
        if missing:
            raise UndefinedVariableError(missing[0])
        return VAR_REF_RE.sub(lambda m: self._values[m.group(1)], template)

    def snapshot(self) -> Mapping[str, str]:
        """Read-only view of the current values."""
        return MappingProxyType(self._values)

    def to_dict(self) -> dict[str, str]:
        return dict(self._values)

    def preserve(self, names: Iterable[str]) -> VariableStore:
        """New store holding only ``names``, detached from their old producers."""
        keep = set(names)
        store = VariableStore(self._max_value_length)
        for name, value in self._values.items():
            if name in keep:
                store._values[name] = value
                store._producers[name] = None
        return store
