"""Tests for bounded polling."""
from __future__ import annotations

import threading

import pytest

from slapdctl.polling import wait_for


def test_wait_for_returns_on_first_success() -> None:
    sleeps: list[float] = []

    result = wait_for(lambda: True, attempts=5, interval=2.0, sleep=sleeps.append)

    assert result.satisfied is True
    assert result.attempts == 1
    assert sleeps == []


def test_wait_for_exhausts_attempts_without_trailing_sleep() -> None:
    """N attempts sleep N-1 times."""
    sleeps: list[float] = []
    calls: list[int] = []

    def predicate() -> bool:
        calls.append(1)
        return False

    result = wait_for(predicate, attempts=3, interval=0.5, sleep=sleeps.append)

    assert not result
    assert result.attempts == 3
    assert result.cancelled is False
    assert len(calls) == 3
    assert sleeps == [0.5, 0.5]


def test_wait_for_succeeds_late() -> None:
    answers = iter([False, False, True])

    result = wait_for(lambda: next(answers), attempts=5, interval=0, sleep=lambda _: None)

    assert result.satisfied is True
    assert result.attempts == 3


def test_wait_for_stops_when_cancelled_before_start() -> None:
    cancel = threading.Event()
    cancel.set()

    result = wait_for(lambda: True, attempts=3, interval=1.0, cancel=cancel)

    assert result.cancelled is True
    assert result.satisfied is False
    assert result.attempts == 0


def test_wait_for_cancel_interrupts_pause() -> None:
    """Setting the event during a pause ends the wait early."""
    cancel = threading.Event()

    def predicate() -> bool:
        cancel.set()
        return False

    result = wait_for(predicate, attempts=10, interval=30.0, cancel=cancel)

    assert result.cancelled is True
    assert result.attempts == 1


def test_wait_for_backs_off_up_to_cap() -> None:
    sleeps: list[float] = []

    wait_for(
        lambda: False,
        attempts=5,
        interval=1.0,
        backoff=2.0,
        max_interval=5.0,
        sleep=sleeps.append,
    )

    assert sleeps == [1.0, 2.0, 4.0, 5.0]


def test_wait_for_rejects_zero_attempts() -> None:
    with pytest.raises(ValueError):
        wait_for(lambda: True, attempts=0, interval=1.0)


def test_wait_for_rejects_shrinking_backoff() -> None:
    with pytest.raises(ValueError, match="backoff"):
        wait_for(lambda: True, attempts=1, interval=1.0, backoff=0.5)
