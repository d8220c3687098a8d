"""Bounded, cancellable polling."""
from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class WaitResult:
    """Outcome of :func:`wait_for`."""

    satisfied: bool
    attempts: int
    cancelled: bool = False

    def __bool__(self) -> bool:
        return self.satisfied


def wait_for(
    predicate: Callable[[], bool],
    *,
    attempts: int,
    interval: float,
    backoff: float = 1.0,
    max_interval: float | None = None,
    cancel: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> WaitResult:
    """Evaluate *predicate* up to *attempts* times, pausing *interval* between tries.

    When *cancel* is given the pause waits on the event instead of sleeping,
    so setting it ends the wait early with ``cancelled=True``. Each pause is
    multiplied by *backoff*, capped at *max_interval* when given.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    if backoff < 1.0:
        raise ValueError("backoff must be at least 1.0")
    pause = interval
    for attempt in range(1, attempts + 1):
        if cancel is not None and cancel.is_set():
            return WaitResult(satisfied=False, attempts=attempt - 1, cancelled=True)
        if predicate():
            return WaitResult(satisfied=True, attempts=attempt)
        if attempt == attempts:
            break
        if cancel is not None:
            if cancel.wait(pause):
                return WaitResult(satisfied=False, attempts=attempt, cancelled=True)
        else:
            sleep(pause)
        pause *= backoff
        if max_interval is not None:
            pause = min(pause, max_interval)
    return WaitResult(satisfied=False, attempts=attempts)


__all__ = ["WaitResult", "wait_for"]
