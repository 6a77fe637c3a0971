"""
Cooperative scheduling helpers.

Long loops run on the event loop in fixed-size slices and give control back
between slices. Each run is tagged with a generation token; a run that is
superseded notices it at the next slice boundary and abandons itself.
"""
import asyncio
import logging
from typing import Any, Callable, Generic, Optional, Sequence, TypeVar, Union

import pandas as pd

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StaleComputation(Exception):
    """Raised inside a chunked run once a newer run has started"""

    def __init__(self, token: int, current: int):
        super().__init__(f"run {token} superseded by run {current}")
        self.token = token
        self.current = current


class GenerationCounter:
    """Monotonically increasing run tokens."""

    def __init__(self) -> None:
        self._value = 0

    @property
    def current(self) -> int:
        return self._value

    def advance(self) -> int:
        """Start a new generation and return its token."""
        self._value += 1
        return self._value

    def is_current(self, token: int) -> bool:
        return token == self._value

    def ensure_current(self, token: int) -> None:
        if token != self._value:
            raise StaleComputation(token, self._value)


class ResultSlot(Generic[T]):
    """Holds the last published result. Values are replaced whole, never mutated."""

    def __init__(self, initial: Optional[T] = None) -> None:
        self._value = initial

    @property
    def value(self) -> Optional[T]:
        return self._value

    def publish(self, counter: GenerationCounter, token: int, value: T) -> bool:
        """Replace the held value if ``token`` is still the current generation."""
        if not counter.is_current(token):
            logger.debug("Dropping result of superseded run %d", token)
            return False
        self._value = value
        return True

    def reset(self, value: Optional[T] = None) -> None:
        self._value = value


def _slice(items: Union[pd.DataFrame, Sequence[Any]], start: int, stop: int):
    if isinstance(items, (pd.DataFrame, pd.Series)):
        return items.iloc[start:stop]
    return items[start:stop]


async def run_in_chunks(items: Union[pd.DataFrame, Sequence[Any]],
                        chunk_size: int,
                        handler: Callable[[Any], None],
                        counter: GenerationCounter,
                        token: int,
                        pause: float = 0.0) -> None:
    """
    Feed ``items`` to ``handler`` in slices of ``chunk_size``.

    The token is checked before every slice and once more after the last
    one, so a caller that returns normally may publish right away.

    Args:
        items: DataFrame (sliced by position) or sequence
        chunk_size: Number of items per slice
        handler: Called once per slice
        counter: Generation counter the run belongs to
        token: Token captured when the run started
        pause: Seconds to sleep between slices (0 just yields to the loop)

    Raises:
        StaleComputation: If the run was superseded
        ValueError: If chunk_size is not positive
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    total = len(items)
    for start in range(0, total, chunk_size):
        counter.ensure_current(token)
        handler(_slice(items, start, start + chunk_size))
        if start + chunk_size < total:
            await asyncio.sleep(pause)
    counter.ensure_current(token)
