# start src/nanoclaw/supervisor.py
"""Lifecycle tracking for spawned agent processes.

Both runner strategies register their subprocesses here. A handle with
``container_name=None`` is a host subprocess; otherwise the process is the
container CLI and graceful termination goes through ``<runtime> stop``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_KILL_GRACE_S = 5.0


@dataclass(eq=False)
class ProcessHandle:
    """A running agent process.

    Attributes:
        process: The asyncio subprocess.
        container_name: Container name, or None for a host subprocess.
        group_folder: Folder of the group the process serves.
        started_at: Monotonic start time.
    """

    process: asyncio.subprocess.Process
    container_name: str | None
    group_folder: str
    started_at: float = field(default_factory=time.monotonic)

    @property
    def pid(self) -> int | None:
        """OS process id of the spawned process."""
        return self.process.pid

    @property
    def exited(self) -> bool:
        """True once the process has been reaped."""
        return self.process.returncode is not None


class ProcessSupervisor:
    """Registry of live agent processes with a global concurrency ceiling.

    Spawning is a two-step affair: ``reserve()`` claims a slot before the
    process exists, ``register()`` converts it into a tracked handle, and
    ``release()`` gives the slot back if the spawn failed.

    Args:
        max_concurrent: Maximum number of agent processes at once.
        runtime: Container CLI binary used for graceful container stops.
        kill_grace_s: Default wait between graceful stop and kill.
    """

    def __init__(
        self,
        max_concurrent: int = 5,
        runtime: str = "container",
        kill_grace_s: float = DEFAULT_KILL_GRACE_S,
    ) -> None:
        self.max_concurrent = max_concurrent
        self.runtime = runtime
        self.kill_grace_s = kill_grace_s
        self._handles: list[ProcessHandle] = []
        self._reserved = 0

    @property
    def active_count(self) -> int:
        """Processes running plus slots reserved for spawns in flight."""
        return len(self._handles) + self._reserved

    def at_capacity(self) -> bool:
        """True when no further process may be spawned."""
        return self.active_count >= self.max_concurrent

    def handles(self) -> list[ProcessHandle]:
        """Snapshot of the registered handles."""
        return list(self._handles)

    def reserve(self) -> bool:
        """Claim a slot for a process about to be spawned.

        Returns:
            False if the concurrency ceiling has been reached.
        """
        if self.at_capacity():
            return False
        self._reserved += 1
        return True

    def release(self) -> None:
        """Return a reserved slot whose spawn did not happen."""
        if self._reserved > 0:
            self._reserved -= 1

    def register(self, handle: ProcessHandle) -> None:
        """Track a spawned process, consuming a reservation if one is held."""
        self.release()
        self._handles.append(handle)
        logger.debug(
            "Registered agent process pid=%s container=%s group=%s (active=%d)",
            handle.pid,
            handle.container_name,
            handle.group_folder,
            self.active_count,
        )

    def unregister(self, handle: ProcessHandle) -> None:
        """Stop tracking a process. Unknown handles are ignored."""
        with contextlib.suppress(ValueError):
            self._handles.remove(handle)

    async def terminate(self, handle: ProcessHandle, grace_s: float | None = None) -> None:
        """Stop a process: graceful request first, kill after the grace period.

        Args:
            handle: The process to stop.
            grace_s: Seconds to wait after the graceful request. Defaults to
                the supervisor's kill_grace_s.
        """
        grace = self.kill_grace_s if grace_s is None else grace_s
        if handle.exited:
            return

        stopper: asyncio.subprocess.Process | None = None
        if handle.container_name is not None:
            stopper = await self._request_container_stop(handle)
        if stopper is None:
            with contextlib.suppress(ProcessLookupError):
                handle.process.terminate()

        try:
            await asyncio.wait_for(handle.process.wait(), timeout=grace)
        except TimeoutError:
            logger.warning(
                "Agent process pid=%s (group=%s) ignored graceful stop for %.1fs, killing",
                handle.pid,
                handle.group_folder,
                grace,
            )
            with contextlib.suppress(ProcessLookupError):
                handle.process.kill()
        finally:
            if stopper is not None and stopper.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    stopper.kill()

    async def shutdown(self, grace_s: float | None = None) -> None:
        """Terminate every registered process."""
        live = [h for h in self._handles if not h.exited]
        if not live:
            return
        logger.info("Stopping %d agent process(es)", len(live))
        await asyncio.gather(*(self.terminate(h, grace_s) for h in live))

    async def _request_container_stop(
        self, handle: ProcessHandle
    ) -> asyncio.subprocess.Process | None:
        """Ask the container runtime to stop a container.

        Returns:
            The stop command's process, or None if it could not be started.
        """
        try:
            return await asyncio.create_subprocess_exec(
                self.runtime,
                "stop",
                handle.container_name,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.warning(
                "Could not run '%s stop %s': %s", self.runtime, handle.container_name, exc
            )
            return None


# end src/nanoclaw/supervisor.py
