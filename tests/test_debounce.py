"""Tests for coalescing local change notifications."""

from __future__ import annotations

import asyncio

from braid.debounce import ChangeDebouncer


class _Collector:
    def __init__(self, fail_times: int = 0) -> None:
        self.batches: list[set[str]] = []
        self.fail_times = fail_times

    async def __call__(self, batch: set[str]) -> None:
        if self.fail_times:
            self.fail_times -= 1
            raise RuntimeError("remote unavailable")
        self.batches.append(set(batch))


async def test_burst_delivered_once() -> None:
    collector = _Collector()
    debouncer = ChangeDebouncer(collector, delay=0.02)
    debouncer.notify(["a"])
    debouncer.notify(["b", "a"])
    await asyncio.sleep(0.1)
    assert collector.batches == [{"a", "b"}]
    assert debouncer.pending == frozenset()


async def test_close_flushes_pending() -> None:
    collector = _Collector()
    debouncer = ChangeDebouncer(collector, delay=10)
    debouncer.notify(["a"])
    await debouncer.close()
    assert collector.batches == [{"a"}]


async def test_failed_batch_is_requeued() -> None:
    collector = _Collector(fail_times=1)
    debouncer = ChangeDebouncer(collector, delay=10)
    debouncer.notify(["a"])
    await debouncer.flush()
    assert collector.batches == []
    assert debouncer.pending == frozenset({"a"})
    await debouncer.flush()
    assert collector.batches == [{"a"}]


async def test_empty_notify_schedules_nothing() -> None:
    collector = _Collector()
    debouncer = ChangeDebouncer(collector, delay=0.01)
    debouncer.notify([])
    await debouncer.close()
    assert collector.batches == []
