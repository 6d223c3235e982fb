# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
import time
from collections.abc import Callable


def retry_strategically(
    predicate: Callable[[], bool], max_attempts: int, base_delay_ms: float
) -> None:
    """
    Evaluate ``predicate`` until it returns True or the attempts run out.

    Between attempts the delay grows linearly: ``base_delay_ms * (1 + i)`` after
    the ``i``-th failed attempt. There is no sleep after the last attempt, so the
    worst case sleeps ``base_delay_ms * max_attempts * (max_attempts - 1) / 2``.

    Giving up is silent. Callers assert on the condition afterwards.

    Parameters
    ----------
    predicate:
        Condition to wait for.
    max_attempts:
        Maximum number of evaluations.
    base_delay_ms:
        Delay after the first failed attempt, in milliseconds.
    """
    for attempt in range(max_attempts):
        if predicate() or attempt == max_attempts - 1:
            return
        time.sleep(base_delay_ms * (1 + attempt) / 1000)
