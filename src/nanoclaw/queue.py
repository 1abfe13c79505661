# start src/nanoclaw/queue.py
"""Per-group turn scheduling for NanoClaw.

At most one agent turn runs per group, and at most ``max_concurrent``
across all groups. Messages arriving for a busy group set a pending flag
so one more turn runs when the current one finishes. A failed turn is
retried with exponential backoff; the slot is released while waiting.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
BASE_RETRY_S = 5.0

ProcessFn = Callable[[str], Coroutine[Any, Any, bool]]


@dataclass
class GroupState:
    """Queue state for one chat.

    Attributes:
        active: A turn is running for this chat.
        pending: Work arrived while the chat was busy or the queue was full.
        retry_count: Consecutive failed turns.
    """

    active: bool = False
    pending: bool = False
    retry_count: int = 0


class GroupQueue:
    """Runs agent turns per chat under a global concurrency ceiling.

    Args:
        max_concurrent: Maximum turns running at once.
        process_messages_fn: Async callable taking a chat id and returning
            True on success, False to retry.
        base_retry_s: Delay before the first retry; doubles per attempt.
    """

    def __init__(
        self,
        max_concurrent: int = 5,
        process_messages_fn: ProcessFn | None = None,
        base_retry_s: float = BASE_RETRY_S,
    ) -> None:
        self.max_concurrent = max_concurrent
        self.base_retry_s = base_retry_s
        self._process_messages_fn = process_messages_fn
        self._groups: dict[str, GroupState] = {}
        self._active_count = 0
        self._shutting_down = False
        self._tasks: set[asyncio.Task[None]] = set()
        self._retry_timers: dict[str, asyncio.TimerHandle] = {}

    @property
    def active_count(self) -> int:
        """Turns currently running."""
        return self._active_count

    def state(self, chat_jid: str) -> GroupState:
        """The queue state for a chat, created on first use."""
        return self._groups.setdefault(chat_jid, GroupState())

    def enqueue(self, chat_jid: str) -> None:
        """Request a turn for a chat.

        Starts it now when the chat is idle and a slot is free; otherwise
        marks the chat pending.
        """
        if self._shutting_down:
            return
        state = self.state(chat_jid)
        if state.active or self._active_count >= self.max_concurrent:
            state.pending = True
            logger.debug(
                "Turn for %s queued (busy=%s, active=%d)",
                chat_jid,
                state.active,
                self._active_count,
            )
            return
        self._start(chat_jid, state)

    def _start(self, chat_jid: str, state: GroupState) -> None:
        # Claim the slot before the task runs so later synchronous calls see it.
        state.active = True
        state.pending = False
        self._active_count += 1
        task = asyncio.create_task(self._run(chat_jid, state))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, chat_jid: str, state: GroupState) -> None:
        logger.debug("Starting turn for %s (active=%d)", chat_jid, self._active_count)
        try:
            ok = False
            if self._process_messages_fn is not None:
                ok = await self._process_messages_fn(chat_jid)
        except Exception:
            logger.exception("Error processing messages for %s", chat_jid)
            ok = False
        finally:
            state.active = False
            self._active_count -= 1

        if ok:
            state.retry_count = 0
        else:
            self._schedule_retry(chat_jid, state)
        self._drain(chat_jid)

    def _schedule_retry(self, chat_jid: str, state: GroupState) -> None:
        if self._shutting_down:
            return
        state.retry_count += 1
        if state.retry_count > MAX_RETRIES:
            logger.error(
                "Max retries exceeded for %s, dropping until the next message", chat_jid
            )
            state.retry_count = 0
            return
        delay_s = self.base_retry_s * (2 ** (state.retry_count - 1))
        logger.info(
            "Retrying %s in %.1fs (attempt %d/%d)",
            chat_jid,
            delay_s,
            state.retry_count,
            MAX_RETRIES,
        )
        previous = self._retry_timers.pop(chat_jid, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._retry_timers[chat_jid] = loop.call_later(delay_s, self._retry, chat_jid)

    def _retry(self, chat_jid: str) -> None:
        self._retry_timers.pop(chat_jid, None)
        self.enqueue(chat_jid)

    def _drain(self, chat_jid: str) -> None:
        """Start pending work: the chat that just finished first, then others."""
        if self._shutting_down:
            return
        state = self.state(chat_jid)
        if state.pending and self._active_count < self.max_concurrent:
            self._start(chat_jid, state)
        for jid, other in self._groups.items():
            if self._active_count >= self.max_concurrent:
                break
            if other.pending and not other.active:
                self._start(jid, other)

    async def shutdown(self, timeout_s: float | None = None) -> None:
        """Stop accepting work, cancel retries, and wait for running turns.

        Turns still running after ``timeout_s`` are cancelled.

        Args:
            timeout_s: Longest time to wait for running turns, or None.
        """
        self._shutting_down = True
        for timer in self._retry_timers.values():
            timer.cancel()
        self._retry_timers.clear()
        logger.info("GroupQueue shutting down (active=%d)", self._active_count)
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout_s)
        if pending:
            logger.warning("Cancelling %d turn(s) still running at shutdown", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)


# end src/nanoclaw/queue.py
