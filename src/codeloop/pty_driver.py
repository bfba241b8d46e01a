"""Run an external command under a pseudo-terminal.

The agent CLI behaves differently when it is not attached to a terminal,
so it is started with stdin/stdout/stderr on a PTY slave while this
process reads the master end. Output is streamed to a caller sink, prompts
are auto-answered via ``PromptResponder`` and a watchdog thread kills the
process group when no output arrives for ``inactivity_timeout`` seconds.

A timeout is a normal outcome (``RunResult.timed_out``), not an exception.
Spawn failures (missing binary, bad cwd) propagate as ``OSError``.
"""

from __future__ import annotations

import codecs
import fcntl
import logging
import os
import pty
import select
import signal
import struct
import subprocess
import termios
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

from codeloop.prompt_responder import PromptResponder
from codeloop.registry import ProcessRegistry
from codeloop.settings import DEFAULT_INACTIVITY_TIMEOUT, Settings

log = logging.getLogger(__name__)

OutputSink = Callable[[str], None]

PTY_ROWS = 50
PTY_COLS = 200
READ_SIZE = 4096
SELECT_TIMEOUT = 0.1
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_DEBOUNCE = 0.1
DEFAULT_KILL_GRACE = 5.0


@dataclass(frozen=True)
class RunResult:
    success: bool
    output: str
    timed_out: bool
    duration: float
    exit_code: int | None
    auto_responses: int = 0


def _set_window_size(fd: int, rows: int = PTY_ROWS, cols: int = PTY_COLS) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _signal_group(pid: int, sig: int) -> None:
    try:
        os.killpg(pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


class _Session:
    """State shared by the reader loop, the watchdog and the debounce timer."""

    def __init__(
        self,
        proc: subprocess.Popen,
        master_fd: int,
        *,
        inactivity_timeout: float,
        poll_interval: float,
        debounce: float,
        kill_grace: float,
        responder: PromptResponder,
        on_output: OutputSink | None,
    ) -> None:
        self.proc = proc
        self.master_fd = master_fd
        self.inactivity_timeout = inactivity_timeout
        self.poll_interval = poll_interval
        self.debounce = debounce
        self.kill_grace = kill_grace
        self.responder = responder
        self.on_output = on_output

        self.parts: list[str] = []
        self.auto_responses = 0
        self.timed_out = False
        self.last_activity = time.monotonic()

        self._lock = threading.Lock()
        self._terminated = False
        self._closed = False
        self._pending: threading.Timer | None = None
        self._stop = threading.Event()
        self._watchdog = threading.Thread(
            target=self._watch, name=f"pty-watchdog-{proc.pid}", daemon=True
        )

    # -- watchdog --

    def start_watchdog(self) -> None:
        self._watchdog.start()

    def stop_watchdog(self) -> None:
        self._stop.set()
        if self._watchdog.is_alive():
            self._watchdog.join()

    def _watch(self) -> None:
        while not self._stop.wait(self.poll_interval):
            idle = time.monotonic() - self.last_activity
            if idle > self.inactivity_timeout:
                log.warning(
                    "pid %d produced no output for %.1fs, terminating",
                    self.proc.pid,
                    idle,
                )
                self.timed_out = True
                self.terminate()
                return

    def terminate(self) -> bool:
        """Kill the process group. Fires at most once per session."""
        with self._lock:
            if self._terminated:
                return False
            self._terminated = True
            if self._pending is not None:
                self._pending.cancel()
                self._pending = None
        _signal_group(self.proc.pid, signal.SIGTERM)
        try:
            self.proc.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            log.warning("pid %d ignored SIGTERM, sending SIGKILL", self.proc.pid)
            _signal_group(self.proc.pid, signal.SIGKILL)
        return True

    # -- output --

    def handle_output(self, text: str) -> None:
        if not text:
            return
        self.last_activity = time.monotonic()
        self.parts.append(text)
        if self.on_output is not None:
            self.on_output(text)
        with self._lock:
            reply = self.responder.feed(text)
            if reply is None or self._pending is not None or self._terminated:
                return
            timer = threading.Timer(self.debounce, self._respond, args=(reply,))
            timer.daemon = True
            self._pending = timer
        timer.start()

    def _respond(self, reply: str) -> None:
        with self._lock:
            self._pending = None
            if self._closed or self._terminated:
                return
            try:
                os.write(self.master_fd, reply.encode())
            except OSError:
                log.debug("Could not write auto-response to pid %d", self.proc.pid)
                return
            self.auto_responses += 1
            self.responder.clear()
        log.info("Auto-responded %r to pid %d", reply, self.proc.pid)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            if self._pending is not None:
                self._pending.cancel()
                self._pending = None
        os.close(self.master_fd)


def _read_until_exit(session: _Session) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    fd = session.master_fd
    while True:
        ready, _, _ = select.select([fd], [], [], SELECT_TIMEOUT)
        if ready:
            try:
                data = os.read(fd, READ_SIZE)
            except OSError:
                # EIO: every slave descriptor is closed.
                data = b""
            if not data:
                break
            session.handle_output(decoder.decode(data))
        elif session.proc.poll() is not None:
            # Exited with a descendant still holding the slave open.
            break
    session.handle_output(decoder.decode(b"", final=True))


def run_command(
    command: str,
    args: Sequence[str],
    cwd: str | os.PathLike[str],
    *,
    inactivity_timeout: float = DEFAULT_INACTIVITY_TIMEOUT,
    on_output: OutputSink | None = None,
    env: Mapping[str, str] | None = None,
    responder: PromptResponder | None = None,
    registry: ProcessRegistry | None = None,
    registry_key: str | None = None,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    debounce: float = DEFAULT_DEBOUNCE,
    kill_grace: float = DEFAULT_KILL_GRACE,
) -> RunResult:
    """Run *command* under a PTY until it exits or goes quiet for too long.

    ``success`` is ``exit_code == 0 and not timed_out``. The driver never
    retries. When *registry* is given the child's pid is registered under
    *registry_key* for the duration of the call.
    """
    if registry is not None and registry_key is None:
        raise ValueError("registry_key is required when a registry is given")
    if registry is not None and registry.lookup(registry_key) is not None:  # type: ignore[arg-type]
        raise ValueError(f"Process key '{registry_key}' is already registered")

    started = time.monotonic()
    master_fd, slave_fd = pty.openpty()
    _set_window_size(slave_fd)
    child_env = {**os.environ, **(env or {}), "TERM": "xterm-256color"}
    try:
        proc = subprocess.Popen(
            [command, *args],
            cwd=cwd,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            env=child_env,
            start_new_session=True,
            close_fds=True,
        )
    except BaseException:
        os.close(master_fd)
        os.close(slave_fd)
        raise
    os.close(slave_fd)
    log.info("Started %s (pid %d) in %s", command, proc.pid, cwd)

    if registry is not None:
        registry.start(registry_key, proc.pid)  # type: ignore[arg-type]

    session = _Session(
        proc,
        master_fd,
        inactivity_timeout=inactivity_timeout,
        poll_interval=poll_interval,
        debounce=debounce,
        kill_grace=kill_grace,
        responder=responder or PromptResponder(),
        on_output=on_output,
    )
    session.start_watchdog()
    try:
        _read_until_exit(session)
    finally:
        session.stop_watchdog()
        # Reaps the child and clears any stragglers in its process group.
        session.terminate()
        session.close()
        if registry is not None:
            registry.stop(registry_key)  # type: ignore[arg-type]

    exit_code = proc.wait()
    duration = time.monotonic() - started
    timed_out = session.timed_out
    log.info(
        "pid %d finished: exit_code=%s timed_out=%s duration=%.1fs",
        proc.pid,
        exit_code,
        timed_out,
        duration,
    )
    return RunResult(
        success=exit_code == 0 and not timed_out,
        output="".join(session.parts),
        timed_out=timed_out,
        duration=duration,
        exit_code=exit_code,
        auto_responses=session.auto_responses,
    )


def build_agent_argv(prompt: str, settings: Settings) -> list[str]:
    """Return the agent command line for a single non-interactive prompt."""
    return [settings.agent_command, "-p", prompt, *settings.agent_args]


def run_agent_command(
    prompt: str,
    cwd: str | os.PathLike[str],
    *,
    settings: Settings | None = None,
    on_output: OutputSink | None = None,
    registry: ProcessRegistry | None = None,
    registry_key: str | None = None,
    inactivity_timeout: float | None = None,
) -> RunResult:
    settings = settings or Settings()
    command, *args = build_agent_argv(prompt, settings)
    return run_command(
        command,
        args,
        cwd,
        inactivity_timeout=inactivity_timeout or settings.inactivity_timeout,
        on_output=on_output,
        registry=registry,
        registry_key=registry_key,
    )
