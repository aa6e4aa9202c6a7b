"""Opaque identifiers for workflow aggregates."""

from __future__ import annotations

import uuid
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class _AggregateId:
    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not self.value.strip():
            raise ValueError(f"{type(self).__name__} requires a non-empty string")

    @classmethod
    def generate(cls):
        return cls(str(uuid.uuid4()))

    @classmethod
    def from_value(cls, value: "str | _AggregateId"):
        if isinstance(value, cls):
            return value
        if isinstance(value, _AggregateId):
            return cls(value.value)
        return cls(value)

    def __str__(self) -> str:
        return self.value


class InstanceId(_AggregateId):
    """Identifier of a workflow instance."""

    __slots__ = ()


class TaskId(_AggregateId):
    """Identifier of a workflow task."""

    __slots__ = ()
