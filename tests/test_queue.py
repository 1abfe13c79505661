# start tests/test_queue.py
"""Tests for nanoclaw.queue.GroupQueue.

Uses pytest-asyncio for async test support.
"""

from __future__ import annotations

import asyncio

import pytest

from nanoclaw.queue import MAX_RETRIES, GroupQueue, ProcessFn


def make_queue(fn: ProcessFn, **kwargs) -> GroupQueue:
    """A GroupQueue with two slots and fast retries unless overridden."""
    kwargs.setdefault("max_concurrent", 2)
    kwargs.setdefault("base_retry_s", 0.01)
    return GroupQueue(process_messages_fn=fn, **kwargs)


async def settle(queue: GroupQueue, rounds: int = 200) -> None:
    """Let queued turns and retry timers run until the queue is idle."""
    for _ in range(rounds):
        await asyncio.sleep(0.01)
        if queue.active_count == 0 and not queue._retry_timers and not queue._tasks:
            return


class TestEnqueue:
    """Tests for enqueue()."""

    @pytest.mark.asyncio
    async def test_calls_process_messages_fn(self) -> None:
        called_for: list[str] = []

        async def fake_fn(jid: str) -> bool:
            called_for.append(jid)
            return True

        queue = make_queue(fake_fn)
        queue.enqueue("group1@g.us")
        await settle(queue)
        assert called_for == ["group1@g.us"]

    @pytest.mark.asyncio
    async def test_slot_claimed_synchronously(self) -> None:
        gate = asyncio.Event()

        async def blocked(jid: str) -> bool:
            await gate.wait()
            return True

        queue = make_queue(blocked)
        queue.enqueue("a@g.us")
        assert queue.active_count == 1
        assert queue.state("a@g.us").active
        gate.set()
        await settle(queue)
        assert queue.active_count == 0

    @pytest.mark.asyncio
    async def test_busy_group_runs_once_more(self) -> None:
        """Several enqueues during a turn collapse into one follow-up turn."""
        calls = 0
        gate = asyncio.Event()

        async def fn(jid: str) -> bool:
            nonlocal calls
            calls += 1
            if calls == 1:
                await gate.wait()
            return True

        queue = make_queue(fn)
        queue.enqueue("a@g.us")
        queue.enqueue("a@g.us")
        queue.enqueue("a@g.us")
        assert queue.state("a@g.us").pending
        gate.set()
        await settle(queue)
        assert calls == 2

    @pytest.mark.asyncio
    async def test_one_turn_per_group(self) -> None:
        running: set[str] = set()
        overlap = False

        async def fn(jid: str) -> bool:
            nonlocal overlap
            if jid in running:
                overlap = True
            running.add(jid)
            await asyncio.sleep(0.02)
            running.discard(jid)
            return True

        queue = make_queue(fn)
        for _ in range(5):
            queue.enqueue("a@g.us")
            await asyncio.sleep(0.005)
        await settle(queue)
        assert not overlap

    @pytest.mark.asyncio
    async def test_concurrency_limit_respected(self) -> None:
        peak = 0
        current = 0

        async def fn(jid: str) -> bool:
            nonlocal peak, current
            current += 1
            peak = max(peak, current)
            await asyncio.sleep(0.02)
            current -= 1
            return True

        queue = make_queue(fn)
        jids = [f"g{i}@g.us" for i in range(5)]
        for jid in jids:
            queue.enqueue(jid)
        assert queue.active_count == 2
        assert [queue.state(j).pending for j in jids] == [False, False, True, True, True]
        await settle(queue)
        assert peak == 2
        assert not any(queue.state(j).pending for j in jids)


class TestRetries:
    """Failed turns are retried with backoff."""

    @pytest.mark.asyncio
    async def test_retry_then_success_resets_count(self) -> None:
        results = [False, False, True]

        async def fn(jid: str) -> bool:
            return results.pop(0)

        queue = make_queue(fn)
        queue.enqueue("a@g.us")
        await settle(queue)
        assert results == []
        assert queue.state("a@g.us").retry_count == 0

    @pytest.mark.asyncio
    async def test_exception_counts_as_failure(self) -> None:
        calls = 0

        async def fn(jid: str) -> bool:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("boom")
            return True

        queue = make_queue(fn)
        queue.enqueue("a@g.us")
        await settle(queue)
        assert calls == 2
        assert queue.active_count == 0

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self) -> None:
        calls = 0

        async def fn(jid: str) -> bool:
            nonlocal calls
            calls += 1
            return False

        queue = make_queue(fn)
        queue.enqueue("a@g.us")
        await settle(queue, rounds=500)
        assert calls == MAX_RETRIES + 1
        assert queue.state("a@g.us").retry_count == 0

    @pytest.mark.asyncio
    async def test_backoff_doubles(self, monkeypatch: pytest.MonkeyPatch) -> None:
        queue = GroupQueue(base_retry_s=5.0)
        delays: list[float] = []
        loop = asyncio.get_running_loop()
        monkeypatch.setattr(
            loop, "call_later", lambda delay, cb, *args: delays.append(delay)
        )
        state = queue.state("a@g.us")
        for _ in range(3):
            queue._schedule_retry("a@g.us", state)
        assert delays == [5.0, 10.0, 20.0]

    @pytest.mark.asyncio
    async def test_new_retry_replaces_pending_timer(self) -> None:
        queue = GroupQueue(base_retry_s=10.0)
        state = queue.state("a@g.us")
        queue._schedule_retry("a@g.us", state)
        first = queue._retry_timers["a@g.us"]
        queue._schedule_retry("a@g.us", state)
        second = queue._retry_timers["a@g.us"]
        assert first.cancelled()
        assert not second.cancelled()
        await queue.shutdown()
        assert second.cancelled()


class TestShutdown:
    """Tests for shutdown()."""

    @pytest.mark.asyncio
    async def test_shutdown_stops_new_enqueues(self) -> None:
        called = False

        async def fn(jid: str) -> bool:
            nonlocal called
            called = True
            return True

        queue = make_queue(fn)
        await queue.shutdown()
        queue.enqueue("a@g.us")
        await asyncio.sleep(0.02)
        assert not called

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_running_turns(self) -> None:
        finished = False

        async def fn(jid: str) -> bool:
            nonlocal finished
            await asyncio.sleep(0.05)
            finished = True
            return True

        queue = make_queue(fn)
        queue.enqueue("a@g.us")
        await queue.shutdown(timeout_s=1)
        assert finished

    @pytest.mark.asyncio
    async def test_shutdown_cancels_retries(self) -> None:
        calls = 0

        async def fn(jid: str) -> bool:
            nonlocal calls
            calls += 1
            return False

        queue = make_queue(fn, base_retry_s=0.05)
        queue.enqueue("a@g.us")
        await asyncio.sleep(0.01)
        await queue.shutdown()
        await asyncio.sleep(0.1)
        assert calls == 1

    @pytest.mark.asyncio
    async def test_shutdown_cancels_turns_after_timeout(self) -> None:
        cancelled = False

        async def fn(jid: str) -> bool:
            nonlocal cancelled
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled = True
                raise
            return True

        queue = make_queue(fn)
        queue.enqueue("a@g.us")
        await asyncio.sleep(0.01)
        await queue.shutdown(timeout_s=0.05)
        assert cancelled
        assert queue.active_count == 0
        assert not queue._tasks


# end tests/test_queue.py
