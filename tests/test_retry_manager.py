"""
Unit tests for the background retry scheduler.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from retry_manager import RetryManager


@pytest.mark.asyncio
async def test_add_to_retry_same_id_replaces_entry(retry_manager):
    first = AsyncMock(return_value=True)
    second = AsyncMock(return_value=True)

    retry_manager.add_to_retry(first, RuntimeError("ETIMEDOUT"), "telegram-alert-user-1-1")
    retry_manager.add_to_retry(second, RuntimeError("ECONNRESET"), "telegram-alert-user-1-1")

    assert retry_manager.pending_count() == 1
    entry = retry_manager.get_entry("telegram-alert-user-1-1")
    assert entry.operation is second
    assert entry.attempt == 1
    assert str(entry.last_error) == "ECONNRESET"


@pytest.mark.asyncio
async def test_add_to_retry_does_not_execute_immediately(retry_manager):
    operation = AsyncMock(return_value=True)

    retry_manager.add_to_retry(operation, RuntimeError("ETIMEDOUT"), "op-1")
    await asyncio.sleep(0)

    operation.assert_not_called()
    assert retry_manager.pending_count() == 1


@pytest.mark.asyncio
async def test_successful_retry_removes_entry(retry_manager, dead_letter):
    operation = AsyncMock(return_value=True)
    retry_manager.add_to_retry(operation, RuntimeError("ETIMEDOUT"), "op-1")

    stats = await retry_manager.run_pending()

    assert stats == {"dispatched": 1, "succeeded": 1, "failed": 0, "dropped": 0}
    operation.assert_awaited_once()
    assert retry_manager.pending_count() == 0
    assert dead_letter.items == []


@pytest.mark.asyncio
async def test_false_result_counts_as_failure(retry_manager):
    retry_manager.add_to_retry(AsyncMock(return_value=False), RuntimeError("ETIMEDOUT"), "op-1")

    stats = await retry_manager.run_pending()

    assert stats["failed"] == 1
    entry = retry_manager.get_entry("op-1")
    assert entry.attempt == 2
    assert entry.running is False


@pytest.mark.asyncio
async def test_entry_dropped_after_max_attempts(retry_manager, dead_letter):
    operation = AsyncMock(side_effect=RuntimeError("ECONNRESET"))
    exhausted = []
    retry_manager.on_exhausted = exhausted.append
    retry_manager.add_to_retry(operation, RuntimeError("ETIMEDOUT"), "op-1")

    results = [await retry_manager.run_pending() for _ in range(3)]

    assert [r["failed"] for r in results] == [1, 1, 0]
    assert results[-1]["dropped"] == 1
    assert operation.await_count == 3
    assert retry_manager.pending_count() == 0
    assert len(dead_letter.items) == 1
    assert dead_letter.items[0]["correlation_id"] == "op-1"
    assert dead_letter.items[0]["error"] == "ECONNRESET"
    assert [entry.id for entry in exhausted] == ["op-1"]

    # Nothing left to run
    assert (await retry_manager.run_pending())["dispatched"] == 0


@pytest.mark.asyncio
async def test_running_entry_is_not_claimed_twice(retry_manager):
    release = asyncio.Event()

    async def slow_operation():
        await release.wait()
        return True

    retry_manager.add_to_retry(slow_operation, RuntimeError("ETIMEDOUT"), "op-1")
    first_tick = asyncio.create_task(retry_manager.run_pending())
    await asyncio.sleep(0)

    second = await retry_manager.run_pending()
    assert second["dispatched"] == 0

    release.set()
    first = await first_tick
    assert first["succeeded"] == 1
    assert retry_manager.pending_count() == 0


@pytest.mark.asyncio
async def test_entry_replaced_in_flight_keeps_new_entry(retry_manager):
    release = asyncio.Event()

    async def slow_failure():
        await release.wait()
        raise RuntimeError("ETIMEDOUT")

    replacement = AsyncMock(return_value=True)
    retry_manager.add_to_retry(slow_failure, RuntimeError("ETIMEDOUT"), "op-1")
    tick = asyncio.create_task(retry_manager.run_pending())
    await asyncio.sleep(0)

    retry_manager.add_to_retry(replacement, RuntimeError("ECONNRESET"), "op-1")
    release.set()
    await tick

    entry = retry_manager.get_entry("op-1")
    assert entry.operation is replacement
    assert entry.attempt == 1
    assert entry.running is False


@pytest.mark.asyncio
async def test_batch_entries_run_concurrently(retry_manager):
    started = []
    release = asyncio.Event()

    def make_operation(name):
        async def operation():
            started.append(name)
            await release.wait()
            return True
        return operation

    for name in ("a", "b", "c"):
        retry_manager.add_to_retry(make_operation(name), RuntimeError("ETIMEDOUT"), name)

    tick = asyncio.create_task(retry_manager.run_pending())
    for _ in range(5):
        await asyncio.sleep(0)

    assert sorted(started) == ["a", "b", "c"]
    release.set()
    assert (await tick)["succeeded"] == 3


@pytest.mark.asyncio
async def test_backoff_delays_next_attempt():
    manager = RetryManager(tick_interval_seconds=30.0, max_attempts=3, base_delay_seconds=60.0, max_delay_seconds=90.0)
    manager.add_to_retry(AsyncMock(side_effect=RuntimeError("ETIMEDOUT")), RuntimeError("ETIMEDOUT"), "op-1")

    await manager.run_pending()
    entry = manager.get_entry("op-1")
    assert entry.not_before is not None
    assert entry.not_before > datetime.now(timezone.utc) + timedelta(seconds=50)

    # Not due yet
    assert (await manager.run_pending())["dispatched"] == 0


def test_backoff_delay_is_bounded():
    manager = RetryManager(base_delay_seconds=10.0, max_delay_seconds=25.0)

    assert manager._backoff_delay(2) == 10.0
    assert manager._backoff_delay(3) == 20.0
    assert manager._backoff_delay(4) == 25.0
    assert RetryManager()._backoff_delay(5) == 0.0


@pytest.mark.asyncio
async def test_timer_runs_ticks_and_stop_clears_entries():
    manager = RetryManager(tick_interval_seconds=0.01, max_attempts=3)
    operation = AsyncMock(return_value=True)

    manager.start()
    manager.start()
    assert manager.running

    manager.add_to_retry(operation, RuntimeError("ETIMEDOUT"), "op-1")
    for _ in range(100):
        if manager.pending_count() == 0:
            break
        await asyncio.sleep(0.01)

    operation.assert_awaited_once()

    manager.add_to_retry(AsyncMock(return_value=True), RuntimeError("ETIMEDOUT"), "op-2")
    await manager.stop()
    await manager.stop()

    assert not manager.running
    assert manager.pending_count() == 0


@pytest.mark.asyncio
async def test_stop_cancels_in_flight_attempts():
    manager = RetryManager(tick_interval_seconds=0.01)
    started = asyncio.Event()
    cancelled = []

    async def hanging():
        started.set()
        try:
            await asyncio.sleep(60)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    manager.add_to_retry(hanging, RuntimeError("ETIMEDOUT"), "op-1")
    manager.start()
    await asyncio.wait_for(started.wait(), timeout=2)

    await manager.stop()

    assert cancelled == [True]
    assert manager.pending_count() == 0
