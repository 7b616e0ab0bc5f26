"""
Shared pytest fixtures for droidtail tests.
"""
import sys
import textwrap
import threading
from unittest.mock import MagicMock

import pytest


@pytest.fixture
def python_command(tmp_path):
    """
    Write a small Python program and return the command line that runs it.

    The command is whitespace-delimited, as the supervisor expects.
    """
    def make(source: str, name: str = "child.py") -> str:
        path = tmp_path / name
        path.write_text(textwrap.dedent(source))
        return f"{sys.executable} {path}"
    return make


@pytest.fixture
def fake_process():
    """
    Create a fake subprocess.Popen result with the given pipes.

    The process reports itself as already exited, so termination is a no-op.
    """
    def make(stdout, stderr, pid: int = 12345):
        process = MagicMock()
        process.stdout = stdout
        process.stderr = stderr
        process.pid = pid
        process.poll.return_value = 0
        process.wait.return_value = 0
        process.returncode = 0
        return process
    return make


@pytest.fixture
def thread_leak_guard():
    """
    Detect reader threads leaked by a test.

    Request it explicitly in tests that open and close streams.
    """
    before = set(t.ident for t in threading.enumerate())
    yield
    after = set(t.ident for t in threading.enumerate())
    leaked = [t for t in threading.enumerate() if t.ident in after - before and t.is_alive()]
    if leaked:
        thread_info = '\n'.join(f"  - {t.name} (daemon={t.daemon})" for t in leaked)
        assert False, f"Thread leak detected: close incomplete.\nLeaked threads:\n{thread_info}"
