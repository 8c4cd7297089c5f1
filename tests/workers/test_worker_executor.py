"""Tests for worker_executor module."""

import signal
import subprocess
import sys
import time
from unittest.mock import MagicMock, patch

import pytest

from resque_pool.errors import SpawnError
from resque_pool.workers.worker_executor import (
    DEFAULT_WORKER_COMMAND,
    DirectWorkerExecutor,
    ExitedWorker,
    WorkerExecutor,
    signal_from_name,
)

unix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX signals")


def wait_for_exit(executor, pid, timeout=10.0):
    """Reap until ``pid`` has exited."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        for worker in executor.reap():
            if worker.pid == pid:
                return worker
        time.sleep(0.05)
    raise AssertionError(f"Worker {pid} did not exit within {timeout}s")


class TestSignalFromName:
    @pytest.mark.parametrize("name", ["TERM", "SIGTERM", "term", " sigterm "])
    def test_names(self, name):
        assert signal_from_name(name) is signal.SIGTERM

    def test_number(self):
        assert signal_from_name(int(signal.SIGINT)) is signal.SIGINT

    def test_signal(self):
        assert signal_from_name(signal.SIGINT) is signal.SIGINT

    def test_unknown_name(self):
        with pytest.raises(ValueError, match="Unknown signal"):
            signal_from_name("NOPE")


class TestWorkerExecutorInterface:
    def test_is_abstract(self):
        with pytest.raises(TypeError):
            WorkerExecutor()


class TestDirectWorkerExecutor:
    """Tests for DirectWorkerExecutor that do not start processes."""

    def test_default_command(self):
        executor = DirectWorkerExecutor()
        assert executor.command == DEFAULT_WORKER_COMMAND.split()

    def test_command_string_is_split(self):
        executor = DirectWorkerExecutor("bundle exec 'rake resque:work'")
        assert executor.command == ["bundle", "exec", "rake resque:work"]

    def test_empty_command_rejected(self):
        with pytest.raises(ValueError, match="must not be empty"):
            DirectWorkerExecutor("  ")

    def test_build_command_appends_queues_in_order(self):
        executor = DirectWorkerExecutor(["worker", "--burst"])
        assert executor.build_command("high, low,") == ["worker", "--burst", "high", "low"]

    def test_stop_signals(self):
        executor = DirectWorkerExecutor(graceful_stop_signal="QUIT", force_stop_signal="TERM")
        assert executor.graceful_stop_signal is signal.SIGQUIT
        assert executor.force_stop_signal is signal.SIGTERM

    def test_invalid_stop_signal(self):
        with pytest.raises(ValueError):
            DirectWorkerExecutor(graceful_stop_signal="BOGUS")

    def test_popen_failure_raises_spawn_error(self, tmp_path):
        executor = DirectWorkerExecutor(["worker"], log_dir=tmp_path)
        with patch(
            "resque_pool.workers.worker_executor.subprocess.Popen",
            side_effect=FileNotFoundError("worker not found"),
        ):
            with pytest.raises(SpawnError) as exc_info:
                executor.start_worker("foo")

        assert exc_info.value.queue_spec == "foo"
        assert "worker not found" in exc_info.value.reason
        assert executor.processes == {}
        assert executor.log_files == {}

    def test_start_worker_environment(self, tmp_path):
        executor = DirectWorkerExecutor(["worker"], log_dir=tmp_path, env={"EXTRA": "1"})
        mock_process = MagicMock(pid=4242)

        with patch(
            "resque_pool.workers.worker_executor.subprocess.Popen", return_value=mock_process
        ) as mock_popen:
            pid = executor.start_worker("high,low")

        assert pid == 4242
        args, kwargs = mock_popen.call_args
        assert args[0] == ["worker", "high", "low"]
        assert kwargs["env"]["QUEUES"] == "high,low"
        assert kwargs["env"]["EXTRA"] == "1"
        assert kwargs["stdin"] == subprocess.DEVNULL
        assert kwargs["stderr"] == subprocess.STDOUT
        assert (tmp_path / "workers" / "high_low-1.log").exists()

        executor.log_files[4242].close()

    def test_signal_unknown_process(self):
        executor = DirectWorkerExecutor()
        with patch("resque_pool.workers.worker_executor.os.kill", side_effect=ProcessLookupError):
            assert executor.signal_worker(999999, signal.SIGTERM) is False

    def test_reap_nothing(self):
        assert DirectWorkerExecutor().reap() == []

    def test_is_worker_running_unknown(self):
        assert DirectWorkerExecutor().is_worker_running(12345) is False


@pytest.mark.integration
@unix_only
class TestDirectWorkerExecutorProcesses:
    """Tests that start real worker processes."""

    def test_worker_gets_queues(self, tmp_path):
        script = "import os, sys; print(os.environ['QUEUES'], sys.argv[1:])"
        executor = DirectWorkerExecutor([sys.executable, "-c", script], log_dir=tmp_path)

        pid = executor.start_worker("foo,bar")
        exited = wait_for_exit(executor, pid)

        assert exited == ExitedWorker(pid=pid, returncode=0)
        log_text = (tmp_path / "workers" / "foo_bar-1.log").read_text()
        assert "foo,bar ['foo', 'bar']" in log_text
        assert pid not in executor.processes

    def test_graceful_stop(self, tmp_path):
        executor = DirectWorkerExecutor(
            [sys.executable, "-c", "import time; time.sleep(60)"], log_dir=tmp_path
        )
        pid = executor.start_worker("foo")
        assert executor.is_worker_running(pid)

        assert executor.stop_worker(pid, graceful=True) is True
        exited = wait_for_exit(executor, pid)

        assert exited.returncode == -signal.SIGTERM
        assert not executor.is_worker_running(pid)

    def test_forced_stop(self, tmp_path):
        script = (
            "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(60)"
        )
        executor = DirectWorkerExecutor([sys.executable, "-c", script], log_dir=tmp_path)
        pid = executor.start_worker("foo")
        time.sleep(0.5)

        executor.stop_worker(pid, graceful=False)
        exited = wait_for_exit(executor, pid)

        assert exited.returncode == -signal.SIGKILL

    def test_failing_worker_is_reaped(self, tmp_path):
        executor = DirectWorkerExecutor(
            [sys.executable, "-c", "raise SystemExit(3)"], log_dir=tmp_path
        )
        pid = executor.start_worker("foo")
        assert wait_for_exit(executor, pid).returncode == 3

    def test_signal_after_exit(self, tmp_path):
        executor = DirectWorkerExecutor([sys.executable, "-c", "pass"], log_dir=tmp_path)
        pid = executor.start_worker("foo")
        process = executor.processes[pid]
        process.wait(timeout=10)

        assert executor.signal_worker(pid, signal.SIGUSR1) is False
