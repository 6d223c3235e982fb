# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
import pytest

from kop.harness import retry
from kop.harness.retry import retry_strategically


@pytest.fixture
def sleeps(monkeypatch) -> list[float]:
    recorded: list[float] = []
    monkeypatch.setattr(retry.time, 'sleep', recorded.append)
    return recorded


def test_always_false_predicate_is_evaluated_max_attempts_times(
    sleeps: list[float],
) -> None:
    calls = []

    def predicate() -> bool:
        calls.append(1)
        return False

    assert retry_strategically(predicate, 3, 10) is None
    assert len(calls) == 3


def test_delay_grows_linearly_and_is_skipped_after_last_attempt(
    sleeps: list[float],
) -> None:
    retry_strategically(lambda: False, 4, 10)
    assert sleeps == pytest.approx([0.01, 0.02, 0.03])


def test_worst_case_total_delay_is_bounded(sleeps: list[float]) -> None:
    max_attempts, base_delay_ms = 5, 20
    retry_strategically(lambda: False, max_attempts, base_delay_ms)
    bound_ms = base_delay_ms * max_attempts * (max_attempts - 1) / 2
    assert sum(sleeps) * 1000 == pytest.approx(bound_ms)


def test_stops_at_first_true_result(sleeps: list[float]) -> None:
    results = iter([False, False, True, False])
    calls = []

    def predicate() -> bool:
        calls.append(1)
        return next(results)

    retry_strategically(predicate, 10, 10)
    assert len(calls) == 3
    assert len(sleeps) == 2


def test_immediate_success_does_not_sleep(sleeps: list[float]) -> None:
    retry_strategically(lambda: True, 3, 10)
    assert sleeps == []


def test_zero_attempts_never_evaluates(sleeps: list[float]) -> None:
    calls = []
    retry_strategically(lambda: calls.append(1), 0, 10)
    assert calls == []


def test_real_sleep_is_short() -> None:
    state = {'n': 0}

    def predicate() -> bool:
        state['n'] += 1
        return state['n'] == 2

    retry_strategically(predicate, 3, 1)
    assert state['n'] == 2
