"""Track the llama-cli process owned by each chat session."""

from __future__ import annotations

import asyncio
import logging
import shlex
import threading
from typing import Any, Awaitable, Callable, Sequence

logger = logging.getLogger("ember.supervisor")

Spawner = Callable[..., Awaitable[asyncio.subprocess.Process]]


def _short(session_id: str) -> str:
    return str(session_id)[:8]


def _terminate(process: asyncio.subprocess.Process) -> bool:
    """Send a termination signal without waiting; False if already gone."""
    if process.returncode is not None:
        return False
    try:
        process.terminate()
    except ProcessLookupError:
        return False
    return True


class ProcessSupervisor:
    """Map session ids to live processes under a single lock.

    ``start`` registers the new process in place of any previous one for the
    same session without signalling the old one; callers stop first. The
    "most recent" slot is advisory and only serves ``stop()`` without a
    session id.
    """

    def __init__(self, *, spawner: Spawner | None = None) -> None:
        self._spawner: Spawner = spawner or asyncio.create_subprocess_exec
        self._lock = threading.Lock()
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._most_recent: asyncio.subprocess.Process | None = None

    async def start(self, session_id: str, argv: Sequence[str], **kwargs: Any) -> asyncio.subprocess.Process:
        logger.debug("Spawning for session %s: %s", _short(session_id), shlex.join(argv))
        process = await self._spawner(*argv, **kwargs)
        with self._lock:
            previous = self._processes.get(session_id)
            self._processes[session_id] = process
            self._most_recent = process
            active = len(self._processes)
        if previous is not None and previous is not process:
            logger.debug("Session %s superseded pid %s", _short(session_id), previous.pid)
        logger.info(
            "Started llama-cli pid %s for session %s (%s active)",
            process.pid,
            _short(session_id),
            active,
        )
        return process

    def get(self, session_id: str) -> asyncio.subprocess.Process | None:
        with self._lock:
            return self._processes.get(session_id)

    def most_recent_session(self) -> str | None:
        """Session id owning the most recently started live process."""
        with self._lock:
            for session_id, process in self._processes.items():
                if process is self._most_recent:
                    return session_id
        return None

    def active_sessions(self) -> list[str]:
        with self._lock:
            return list(self._processes)

    def stop(self, session_id: str | None = None) -> bool:
        """Signal the session's process (or the most recent one) and forget it."""
        with self._lock:
            if session_id is None:
                process = self._most_recent
                for key, candidate in list(self._processes.items()):
                    if candidate is process:
                        del self._processes[key]
            else:
                process = self._processes.pop(session_id, None)
            if process is self._most_recent:
                self._most_recent = None
            signalled = process is not None and _terminate(process)
        if signalled:
            logger.info("Terminated llama-cli pid %s (session %s)", process.pid, _short(session_id or "latest"))
        return signalled

    def stop_all(self) -> int:
        with self._lock:
            processes = list(self._processes.items())
            self._processes.clear()
            self._most_recent = None
            stopped = sum(1 for _, process in processes if _terminate(process))
        logger.info("Stopped %s of %s session processes", stopped, len(processes))
        return stopped

    def release(self, session_id: str, process: asyncio.subprocess.Process) -> None:
        """Deregister a finished process unless a newer one replaced it."""
        with self._lock:
            if self._processes.get(session_id) is process:
                del self._processes[session_id]
            if self._most_recent is process:
                self._most_recent = None
            remaining = len(self._processes)
        logger.debug("Released session %s (%s remaining)", _short(session_id), remaining)


__all__ = ["ProcessSupervisor", "Spawner"]
