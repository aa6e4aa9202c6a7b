"""Shared plumbing for the orchestration handlers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..config import HandlerConfig
from ..dispatch import EventDispatcher
from ..domain.events import EventOutbox
from ..errors import (
    ConcurrencyConflictError,
    ErrorKind,
    ValidationError,
    WorkflowRuntimeError,
)
from ..utils.retry import schedule_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")
CommandT = TypeVar("CommandT", bound=BaseModel)


@dataclass(frozen=True)
class ErrorInfo:
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class HandlerResult(Generic[T]):
    """Outcome of one handler call: a value or the error that stopped it."""

    value: Optional[T] = None
    error: Optional[WorkflowRuntimeError] = None

    @classmethod
    def success(cls, value: T) -> "HandlerResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: WorkflowRuntimeError) -> "HandlerResult[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_info(self) -> Optional[ErrorInfo]:
        if self.error is None:
            return None
        return ErrorInfo(kind=self.error.kind, message=self.error.message)

    @property
    def undelivered_events(self) -> tuple:
        """Events saved but not published when dispatch failed; empty otherwise."""
        return getattr(self.error, "undelivered", ())

    def unwrap(self) -> T:
        """Return the value or re-raise the original error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def coerce_command(model: Type[CommandT], command: Any) -> CommandT:
    """Accept a command model or a plain mapping and validate it."""
    if isinstance(command, model):
        return command
    if isinstance(command, BaseModel):
        command = command.model_dump()
    if not isinstance(command, Mapping):
        raise ValidationError(f"Expected {model.__name__}, got {type(command).__name__}")
    try:
        return model.model_validate(command)
    except PydanticValidationError as exc:
        fields = [".".join(str(p) for p in err["loc"]) for err in exc.errors()]
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'command'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ValidationError(f"Invalid {model.__name__}: {details}", fields) from exc


class BaseHandler(Generic[CommandT, T]):
    """Validate, run ``_execute`` and fold runtime errors into a result.

    Subclasses set ``command_type`` and implement ``_execute``. Anything that
    is not a :class:`WorkflowRuntimeError` is logged and propagates.
    """

    command_type: Type[CommandT]

    def __init__(
        self,
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[HandlerConfig] = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._config = config or HandlerConfig()

    async def handle(self, command: CommandT | Mapping[str, Any]) -> HandlerResult[T]:
        name = type(self).__name__
        try:
            validated = coerce_command(self.command_type, command)
            value = await self._execute(validated)
        except WorkflowRuntimeError as e:
            logger.info(f"{name} failed ({e.kind.value}): {e.message}")
            return HandlerResult.failure(e)
        except Exception:
            logger.exception(f"{name} raised an unexpected error")
            raise
        return HandlerResult.success(value)

    async def _execute(self, command: CommandT) -> T:
        raise NotImplementedError

    async def _dispatch(self, *aggregates: EventOutbox) -> None:
        if self._dispatcher is None:
            raise RuntimeError(f"{type(self).__name__} has no event dispatcher")
        for aggregate in aggregates:
            await self._dispatcher.dispatch(aggregate)

    async def _with_conflict_retry(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` again from a fresh load while saves conflict."""
        attempts = self._config.max_conflict_retries
        for attempt in range(attempts):
            try:
                return await operation()
            except ConcurrencyConflictError as e:
                if attempt + 1 >= attempts:
                    raise
                logger.info(
                    f"Version conflict on {e.aggregate_id}, retrying "
                    f"(attempt {attempt + 2}/{attempts})"
                )
                await schedule_retry(
                    attempt,
                    self._config.retry_base_delay,
                    self._config.retry_factor,
                    self._config.retry_jitter,
                )
        raise AssertionError("unreachable")
