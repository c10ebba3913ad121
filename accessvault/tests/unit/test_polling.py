from __future__ import annotations

import asyncio

import pytest

from accessvault.core.errors import PollTimeoutError
from accessvault.services.polling import poll_until


class _Counter:
    def __init__(self, ready_after: int) -> None:
        self.calls = 0
        self.ready_after = ready_after

    async def __call__(self) -> dict:
        self.calls += 1
        return {"status": "DONE" if self.calls >= self.ready_after else "RUNNING", "call": self.calls}


@pytest.mark.asyncio
async def test_poll_returns_first_value_matching_predicate() -> None:
    fetch = _Counter(ready_after=3)

    result = await poll_until(fetch, lambda op: op["status"] == "DONE", interval_s=0, max_attempts=5)

    assert result == {"status": "DONE", "call": 3}
    assert fetch.calls == 3


@pytest.mark.asyncio
async def test_poll_raises_after_attempt_budget() -> None:
    fetch = _Counter(ready_after=10)

    with pytest.raises(PollTimeoutError, match="after 2 attempts"):
        await poll_until(fetch, lambda op: op["status"] == "DONE", interval_s=0, max_attempts=2, label="op")

    assert fetch.calls == 2


@pytest.mark.asyncio
async def test_poll_raises_after_time_budget() -> None:
    fetch = _Counter(ready_after=10_000)

    with pytest.raises(PollTimeoutError, match="within"):
        await poll_until(fetch, lambda op: False, interval_s=0.01, timeout_s=0.05)

    assert fetch.calls >= 1


@pytest.mark.asyncio
async def test_poll_requires_a_bound() -> None:
    fetch = _Counter(ready_after=1)

    with pytest.raises(ValueError):
        await poll_until(fetch, lambda op: True, interval_s=1)
    with pytest.raises(ValueError):
        await poll_until(fetch, lambda op: True, interval_s=1, max_attempts=0)
    assert fetch.calls == 0


@pytest.mark.asyncio
async def test_fetch_errors_propagate_without_retry() -> None:
    calls = 0

    async def _failing() -> dict:
        nonlocal calls
        calls += 1
        raise RuntimeError("operation lookup failed")

    with pytest.raises(RuntimeError, match="operation lookup failed"):
        await poll_until(_failing, lambda op: True, interval_s=0, max_attempts=5)
    assert calls == 1


@pytest.mark.asyncio
async def test_cancelling_the_poller_stops_it() -> None:
    fetch = _Counter(ready_after=10_000)
    task = asyncio.create_task(poll_until(fetch, lambda op: False, interval_s=10, max_attempts=100))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert fetch.calls == 1
