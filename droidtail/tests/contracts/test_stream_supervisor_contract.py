"""
Contract tests for StreamSupervisor running real child processes.

Tests cover:
- One-shot runs (records then terminal marker then end)
- Head limit (zero, and across restarts)
- Restart on exit (notice, fresh child each cycle, lingering child terminated)
- Merged stdout/stderr delivery
- Spawn failures
- Termination of the child on close
"""

import os
import time

import pytest

from droidtail.errors import SpawnError
from droidtail.record import Record
from droidtail.stream.lossy_lines import NOT_READY
from droidtail.supervisor import EXHAUSTED, StreamSupervisor, SupervisorState

# No crash-loop delay, so restart tests run quickly
FAST_RESTART = dict(restart_backoff_ms=[0], min_uptime_ms=0)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class TestOneShotRun:
    """Tests for restart=False."""

    @pytest.mark.timeout(10)
    def test_lines_then_terminal_marker_then_end(self, python_command):
        command = python_command("""
            import sys
            sys.stdout.write("x\\ny\\n")
        """)
        with StreamSupervisor(command, restart=False) as supervisor:
            assert list(supervisor) == [Record("x"), Record("y"), None]
            assert supervisor.poll() is EXHAUSTED
            assert supervisor.state is SupervisorState.DONE

    @pytest.mark.timeout(10)
    def test_final_line_without_newline_is_delivered(self, python_command):
        command = python_command("""
            import sys
            sys.stdout.write("first\\nlast")
        """)
        with StreamSupervisor(command) as supervisor:
            assert [r.raw for r in supervisor if r is not None] == ["first", "last"]

    @pytest.mark.timeout(10)
    def test_invalid_utf8_is_replaced(self, python_command):
        command = python_command("""
            import sys
            sys.stdout.buffer.write(b"ok\\xff\\n")
        """)
        with StreamSupervisor(command) as supervisor:
            record = next(supervisor)
        assert record.raw == "ok�"

    @pytest.mark.timeout(10)
    def test_exit_code_is_not_an_error(self, python_command):
        command = python_command("""
            import sys
            print("dying")
            sys.exit(3)
        """)
        with StreamSupervisor(command) as supervisor:
            assert list(supervisor) == [Record("dying"), None]

    @pytest.mark.timeout(10)
    def test_stdout_and_stderr_are_merged(self, python_command):
        command = python_command("""
            import sys
            for i in range(50):
                sys.stdout.write("out%d\\n" % i)
                sys.stderr.write("err%d\\n" % i)
        """)
        with StreamSupervisor(command) as supervisor:
            records = [r for r in supervisor if r is not None]

        stdout = [r.raw for r in records if r.stream == "stdout"]
        stderr = [r.raw for r in records if r.stream == "stderr"]
        assert stdout == ["out%d" % i for i in range(50)]
        assert stderr == ["err%d" % i for i in range(50)]


class TestHeadLimit:
    """Tests for the head budget."""

    @pytest.mark.timeout(10)
    def test_head_zero_delivers_nothing(self, python_command):
        command = python_command("""
            for i in range(10):
                print(i)
        """)
        with StreamSupervisor(command, head=0) as supervisor:
            assert supervisor.poll() is EXHAUSTED
            assert list(supervisor) == []
            assert supervisor.state is SupervisorState.DONE

    @pytest.mark.timeout(10)
    def test_head_caps_lines_across_restarts(self, python_command):
        command = python_command("""
            print("tick")
        """)
        notices = []
        with StreamSupervisor(
            command, restart=True, head=3, on_restart=notices.append, **FAST_RESTART
        ) as supervisor:
            records = list(supervisor)
            assert supervisor.remaining == 0

        assert records == [Record("tick")] * 3
        assert len(notices) == 2
        assert notices[0] == command

    @pytest.mark.timeout(10)
    def test_head_stops_long_output_early(self, python_command):
        command = python_command("""
            for i in range(1000):
                print(i)
        """)
        with StreamSupervisor(command, head=5) as supervisor:
            assert [r.raw for r in supervisor] == ["0", "1", "2", "3", "4"]

    def test_negative_head_is_rejected(self):
        with pytest.raises(ValueError):
            StreamSupervisor("true", head=-1)


class TestRestartOnExit:
    """Tests for restart=True."""

    @pytest.mark.timeout(10)
    def test_each_cycle_yields_line_then_restarts(self, python_command):
        command = python_command("""
            import os
            print(os.getpid())
        """)
        with StreamSupervisor(command, restart=True, head=4, on_restart=lambda c: None, **FAST_RESTART) as supervisor:
            pids = [r.raw for r in supervisor]
            assert supervisor.restarts == 3

        # A fresh child per cycle, never a terminal marker
        assert len(set(pids)) == 4

    @pytest.mark.timeout(10)
    def test_default_notice_is_printed(self, python_command, capsys):
        command = python_command("""
            print("once")
        """)
        with StreamSupervisor(command, restart=True, head=2, **FAST_RESTART) as supervisor:
            list(supervisor)

        err = capsys.readouterr().err
        assert f'Restarting "{command}"' in err

    @pytest.mark.timeout(10)
    def test_quick_exit_delays_restart(self, python_command):
        command = python_command("""
            print("quick")
        """)
        with StreamSupervisor(
            command,
            restart=True,
            restart_backoff_ms=[60000],
            min_uptime_ms=60000,
            on_restart=lambda c: None,
        ) as supervisor:
            assert supervisor.poll(timeout=5.0) == Record("quick")
            assert supervisor.poll(timeout=2.0) is NOT_READY
            assert supervisor.state is SupervisorState.RESPAWNING
            assert supervisor.restarts == 0

    @pytest.mark.timeout(15)
    def test_child_lingering_after_closing_output_is_terminated(self, python_command):
        command = python_command("""
            import os
            import time
            print("up", flush=True)
            os.close(1)
            os.close(2)
            time.sleep(60)
        """)
        with StreamSupervisor(
            command, restart=True, terminate_grace_sec=0.2, on_restart=lambda c: None, **FAST_RESTART
        ) as supervisor:
            assert supervisor.poll(timeout=5.0) == Record("up")
            first_pid = supervisor.pid
            assert supervisor.poll(timeout=5.0) == Record("up")
            assert supervisor.restarts == 1
            assert supervisor.pid != first_pid
            assert not _pid_alive(first_pid)


class TestSpawn:
    """Tests for launching the command."""

    def test_missing_executable_is_spawn_error(self, tmp_path):
        with pytest.raises(SpawnError):
            StreamSupervisor(str(tmp_path / "no-such-adb") + " logcat")

    def test_empty_command_is_spawn_error(self):
        with pytest.raises(SpawnError):
            StreamSupervisor("   ")

    @pytest.mark.timeout(10)
    def test_command_is_trimmed(self, python_command):
        command = python_command("""
            print("ok")
        """)
        with StreamSupervisor(f"  {command}  ") as supervisor:
            assert supervisor.command == command


class TestTermination:
    """Tests for terminating the child when supervision ends."""

    @pytest.mark.timeout(15)
    def test_close_terminates_running_child(self, python_command):
        command = python_command("""
            import sys, time
            sys.stdout.write("ready\\n")
            sys.stdout.flush()
            time.sleep(60)
        """)
        supervisor = StreamSupervisor(command, restart=True)
        assert supervisor.poll(timeout=5.0) == Record("ready")
        pid = supervisor.pid
        assert _pid_alive(pid)

        supervisor.close()

        assert not _pid_alive(pid)
        assert supervisor.state is SupervisorState.DONE
        assert supervisor.poll() is EXHAUSTED

    @pytest.mark.timeout(15)
    def test_child_ignoring_sigterm_is_killed(self, python_command):
        command = python_command("""
            import signal, sys, time
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
            sys.stdout.write("stubborn\\n")
            sys.stdout.flush()
            time.sleep(60)
        """)
        supervisor = StreamSupervisor(command, terminate_grace_sec=0.5)
        assert supervisor.poll(timeout=5.0) == Record("stubborn")
        pid = supervisor.pid

        started = time.monotonic()
        supervisor.close()

        assert not _pid_alive(pid)
        assert time.monotonic() - started < 5.0

    @pytest.mark.timeout(15)
    def test_head_exhaustion_terminates_child(self, python_command):
        command = python_command("""
            import sys, time
            sys.stdout.write("a\\nb\\n")
            sys.stdout.flush()
            time.sleep(60)
        """)
        supervisor = StreamSupervisor(command, head=1)
        pid = supervisor.pid
        assert list(supervisor) == [Record("a")]
        assert not _pid_alive(pid)

    @pytest.mark.timeout(10)
    def test_idle_child_is_not_ready(self, python_command):
        command = python_command("""
            import time
            time.sleep(60)
        """)
        with StreamSupervisor(command) as supervisor:
            assert supervisor.poll() is NOT_READY
            assert supervisor.poll(timeout=0.1) is NOT_READY
            assert supervisor.state is SupervisorState.RUNNING
