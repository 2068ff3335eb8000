"""Ordered fallback chains.

Runs a list of strategies in order and stops at the first one that
produces a result. Strategies report "no result" by returning None;
exceptions are collected and the chain moves on unless the exception type
is listed in ``propagate``.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Optional, Sequence, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Attempt:
    name: str
    error: Optional[BaseException] = None


@dataclass
class FallbackResult(Generic[T]):
    value: Optional[T] = None
    winner: Optional[str] = None
    attempts: list[Attempt] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.winner is not None


async def first_success(
    steps: Sequence[Tuple[str, Callable[[], Awaitable[Optional[T]]]]],
    propagate: Tuple[Type[BaseException], ...] = (),
) -> FallbackResult[T]:
    """Await each named step in turn; the first non-None value wins."""
    result: FallbackResult[Any] = FallbackResult()
    for name, step in steps:
        attempt = Attempt(name=name)
        result.attempts.append(attempt)
        try:
            value = await step()
        except propagate:
            raise
        except Exception as e:
            attempt.error = e
            logger.warning(f"Fallback step '{name}' failed: {type(e).__name__}: {e}")
            continue
        if value is not None:
            result.value = value
            result.winner = name
            logger.debug(f"Fallback step '{name}' succeeded")
            return result
        logger.debug(f"Fallback step '{name}' produced no result")
    return result
