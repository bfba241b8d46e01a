"""Tracking of live agent processes so they can be killed on shutdown."""

from __future__ import annotations

import logging
import os
import signal
import threading

log = logging.getLogger(__name__)


class ProcessRegistry:
    """Thread-safe map of caller-chosen keys to child pids.

    The driver registers each child under a key for the duration of one
    invocation. ``terminate_all`` is called from signal handlers so an
    interrupted run does not leave the agent behind.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pids: dict[str, int] = {}

    def start(self, key: str, pid: int) -> None:
        with self._lock:
            if key in self._pids:
                raise ValueError(f"Process key '{key}' is already registered")
            self._pids[key] = pid

    def stop(self, key: str) -> int | None:
        with self._lock:
            return self._pids.pop(key, None)

    def lookup(self, key: str) -> int | None:
        with self._lock:
            return self._pids.get(key)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._pids)

    def terminate_all(self, sig: int = signal.SIGTERM) -> list[int]:
        """Signal every registered process group. Returns the pids signalled."""
        with self._lock:
            entries = list(self._pids.items())
            self._pids.clear()
        signalled: list[int] = []
        for key, pid in entries:
            try:
                os.killpg(pid, sig)
            except ProcessLookupError:
                continue
            except PermissionError:
                log.warning("No permission to signal %s (pid %d)", key, pid)
                continue
            log.info("Sent signal %d to %s (pid %d)", sig, key, pid)
            signalled.append(pid)
        return signalled

    def __len__(self) -> int:
        with self._lock:
            return len(self._pids)
