"""Tests for the live process registry."""

import os
import signal
import subprocess
import sys
import threading
from unittest.mock import patch

import pytest

from codeloop.registry import ProcessRegistry


def test_start_lookup_stop():
    registry = ProcessRegistry()
    registry.start("run-1:developer", 1234)
    assert registry.lookup("run-1:developer") == 1234
    assert registry.keys() == ["run-1:developer"]
    assert len(registry) == 1
    assert registry.stop("run-1:developer") == 1234
    assert registry.stop("run-1:developer") is None
    assert len(registry) == 0


def test_duplicate_key_rejected():
    registry = ProcessRegistry()
    registry.start("k", 1)
    with pytest.raises(ValueError, match="already registered"):
        registry.start("k", 2)


def test_concurrent_registration():
    registry = ProcessRegistry()

    def register(start):
        for i in range(start, start + 100):
            registry.start(f"key-{i}", i)

    threads = [threading.Thread(target=register, args=(n * 100,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(registry) == 400


def test_terminate_all_skips_vanished_processes():
    registry = ProcessRegistry()
    registry.start("alive", 100)
    registry.start("gone", 200)

    def fake_killpg(pid, sig):
        if pid == 200:
            raise ProcessLookupError

    with patch("codeloop.registry.os.killpg", side_effect=fake_killpg) as killpg:
        signalled = registry.terminate_all()
    assert signalled == [100]
    assert killpg.call_count == 2
    assert len(registry) == 0


def test_terminate_all_kills_real_process_group():
    proc = subprocess.Popen(
        [sys.executable, "-c", "import time; time.sleep(30)"],
        start_new_session=True,
    )
    registry = ProcessRegistry()
    registry.start("sleeper", proc.pid)
    try:
        assert registry.terminate_all() == [proc.pid]
        assert proc.wait(timeout=10) == -signal.SIGTERM
    finally:
        if proc.poll() is None:
            os.killpg(proc.pid, signal.SIGKILL)
            proc.wait()
