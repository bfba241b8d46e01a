"""Tests for the PTY process driver, using real Python child processes."""

import signal
import sys
import textwrap
import time

import pytest

from codeloop.pty_driver import RunResult, build_agent_argv, run_agent_command, run_command
from codeloop.registry import ProcessRegistry
from codeloop.settings import Settings

pytestmark = [
    pytest.mark.slow,
    pytest.mark.skipif(sys.platform == "win32", reason="PTYs are POSIX only"),
]


def _script(body: str) -> list[str]:
    return ["-c", textwrap.dedent(body)]


def _run(body: str, tmp_path, **kwargs) -> RunResult:
    kwargs.setdefault("inactivity_timeout", 20)
    return run_command(sys.executable, _script(body), tmp_path, **kwargs)


def test_captures_output_and_exit_code(tmp_path):
    result = _run("print('hello from child')", tmp_path)
    assert result.success is True
    assert result.exit_code == 0
    assert result.timed_out is False
    assert "hello from child" in result.output
    assert result.auto_responses == 0


def test_nonzero_exit_is_failure(tmp_path):
    result = _run("import sys; print('bad'); sys.exit(3)", tmp_path)
    assert result.success is False
    assert result.exit_code == 3
    assert result.timed_out is False


def test_runs_in_cwd_with_a_tty(tmp_path):
    result = _run("import os, sys; print(os.getcwd(), sys.stdout.isatty())", tmp_path)
    assert str(tmp_path) in result.output
    assert "True" in result.output


def test_streams_output_to_sink(tmp_path):
    chunks = []
    result = _run(
        """
        import time
        for i in range(3):
            print(f"line {i}", flush=True)
            time.sleep(0.05)
        """,
        tmp_path,
        on_output=chunks.append,
    )
    assert "".join(chunks) == result.output
    assert "line 2" in result.output


def test_decodes_multibyte_utf8(tmp_path):
    result = _run(
        "import sys; sys.stdout.buffer.write('caf\\u00e9 \\u2713\\n'.encode()); sys.stdout.flush()",
        tmp_path,
    )
    assert "café ✓" in result.output


def test_prompt_is_answered_once(tmp_path):
    result = _run(
        """
        import sys, time
        answer = input("Continue? (y/n) ")
        print(f"got:{answer}")
        sys.stdout.flush()
        time.sleep(1)
        """,
        tmp_path,
    )
    assert result.success is True
    assert result.auto_responses == 1
    assert "got:y" in result.output


def test_two_prompts_each_answered(tmp_path):
    result = _run(
        """
        a = input("Overwrite? [Y/n] ")
        b = input("Press Enter to continue")
        print(f"answers:{a!r},{b!r}")
        """,
        tmp_path,
    )
    assert result.auto_responses == 2
    assert "answers:'Y',''" in result.output


def test_inactivity_timeout_kills_process(tmp_path):
    started = time.monotonic()
    result = _run(
        """
        import time
        print("working", flush=True)
        time.sleep(60)
        """,
        tmp_path,
        inactivity_timeout=0.5,
        poll_interval=0.1,
        kill_grace=2,
    )
    assert result.timed_out is True
    assert result.success is False
    assert result.exit_code == -signal.SIGTERM
    assert "working" in result.output
    assert time.monotonic() - started < 15


def test_sigkill_after_grace_period(tmp_path):
    result = _run(
        """
        import signal, time
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        print("stubborn", flush=True)
        time.sleep(60)
        """,
        tmp_path,
        inactivity_timeout=0.5,
        poll_interval=0.1,
        kill_grace=0.5,
    )
    assert result.timed_out is True
    assert result.exit_code == -signal.SIGKILL


def test_output_resets_inactivity_clock(tmp_path):
    result = _run(
        """
        import time
        for i in range(6):
            print(i, flush=True)
            time.sleep(0.2)
        """,
        tmp_path,
        inactivity_timeout=1.0,
        poll_interval=0.1,
    )
    assert result.timed_out is False
    assert result.success is True


def test_registry_tracks_child_while_running(tmp_path):
    registry = ProcessRegistry()
    seen = []

    def sink(text):
        seen.append(registry.lookup("run:developer"))

    result = _run(
        "print('x')", tmp_path, registry=registry, registry_key="run:developer", on_output=sink
    )
    assert result.success
    assert seen and all(isinstance(pid, int) for pid in seen)
    assert registry.lookup("run:developer") is None


def test_registry_requires_key(tmp_path):
    with pytest.raises(ValueError, match="registry_key"):
        _run("print('x')", tmp_path, registry=ProcessRegistry())


def test_missing_binary_raises(tmp_path):
    with pytest.raises(OSError):
        run_command("definitely-not-a-real-binary-xyz", [], tmp_path)


def test_build_agent_argv():
    settings = Settings(agent_command="claude", agent_args=("--verbose",))
    assert build_agent_argv("do it", settings) == ["claude", "-p", "do it", "--verbose"]


def test_run_agent_command_uses_settings(tmp_path):
    script = tmp_path / "agent.py"
    script.write_text("import sys\nprint('prompt=' + sys.argv[2])\n")
    wrapper = tmp_path / "agent.sh"
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n')
    wrapper.chmod(0o755)
    settings = Settings(agent_command=str(wrapper), agent_args=("--extra",))
    result = run_agent_command("build the thing", tmp_path, settings=settings)
    assert result.success
    assert "prompt=build the thing" in result.output
