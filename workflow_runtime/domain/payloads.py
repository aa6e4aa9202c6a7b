"""Serialize/deserialize boundary for the structured payload fields.

Aggregates hold payloads as plain dicts and typed lists. They only become
JSON text in ``to_persistence`` and are parsed back in ``reconstitute``.
Malformed stored JSON raises :class:`CorruptRecordError` in strict mode and
falls back to an empty value (with a warning) otherwise.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Callable, Optional, TypeVar

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..errors import CorruptRecordError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Comment(BaseModel):
    text: str
    timestamp: datetime


class Attachment(BaseModel):
    url: str
    timestamp: datetime


_OBJECT = TypeAdapter(dict[str, Any])
_COMMENTS = TypeAdapter(list[Comment])
_ATTACHMENTS = TypeAdapter(list[Attachment])


def _dumps(value: Any) -> str:
    try:
        return json.dumps(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Payload is not JSON serializable: {exc}") from exc


def dump_object(value: Optional[dict[str, Any]]) -> str:
    return _dumps(value or {})


def dump_optional_object(value: Optional[dict[str, Any]]) -> Optional[str]:
    return None if value is None else _dumps(value)


def dump_models(items: list[BaseModel]) -> str:
    return json.dumps([item.model_dump(mode="json") for item in items])


def _load(
    adapter: TypeAdapter[T], raw: Any, field: str, default: Callable[[], T], strict: bool
) -> T:
    if raw is None or raw == "":
        return default()
    try:
        if isinstance(raw, (str, bytes)):
            return adapter.validate_json(raw)
        return adapter.validate_python(raw)
    except PydanticValidationError as exc:
        if strict:
            raise CorruptRecordError(f"Stored field '{field}' is malformed: {exc}") from exc
        logger.warning(f"Ignoring malformed stored field '{field}'; using empty value")
        return default()


def load_object(raw: Any, field: str, strict: bool = True) -> dict[str, Any]:
    return _load(_OBJECT, raw, field, dict, strict)


def load_optional_object(raw: Any, field: str, strict: bool = True) -> Optional[dict[str, Any]]:
    if raw is None:
        return None
    return _load(_OBJECT, raw, field, dict, strict)


def load_comments(raw: Any, strict: bool = True) -> list[Comment]:
    return _load(_COMMENTS, raw, "comments", list, strict)


def load_attachments(raw: Any, strict: bool = True) -> list[Attachment]:
    return _load(_ATTACHMENTS, raw, "attachments", list, strict)
