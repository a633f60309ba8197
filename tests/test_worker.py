"""Tests for the worker process entry point."""

import os
import signal
import sys
from unittest.mock import Mock, patch

import pytest

from tunnel_provider.common.exceptions import (
    DecodeError,
    EngineError,
    WatchdogFailure,
)
from tunnel_provider.common.settings import TUNNEL_CONF_ENV, TUNNEL_TYPE_ENV
from tunnel_provider.tunnels.codec import encode
from tunnel_provider.worker import (
    StopSignal,
    install_signal_handlers,
    parse_parent_pid,
    run_worker,
    take_descriptor,
)


@pytest.fixture
def worker_env(ssh_descriptor, monkeypatch):
    monkeypatch.setenv(TUNNEL_TYPE_ENV, "ssh")
    monkeypatch.setenv(TUNNEL_CONF_ENV, encode(ssh_descriptor))


class TestTakeDescriptor:
    """Test reading the descriptor from the environment."""

    def test_reads_and_clears(self, ssh_descriptor):
        environ = {
            TUNNEL_TYPE_ENV: "ssh",
            TUNNEL_CONF_ENV: encode(ssh_descriptor),
            "PATH": "/bin",
        }

        assert take_descriptor(environ) == ssh_descriptor
        assert environ == {"PATH": "/bin"}

    def test_missing_config(self):
        environ = {TUNNEL_TYPE_ENV: "ssh"}

        with pytest.raises(DecodeError, match="must both be set"):
            take_descriptor(environ)
        assert environ == {}

    def test_type_mismatch(self, ssh_descriptor):
        environ = {TUNNEL_TYPE_ENV: "ssm", TUNNEL_CONF_ENV: encode(ssh_descriptor)}

        with pytest.raises(DecodeError, match="worker started as 'ssm'"):
            take_descriptor(environ)

    def test_invalid_config(self):
        with pytest.raises(DecodeError):
            take_descriptor({TUNNEL_TYPE_ENV: "ssh", TUNNEL_CONF_ENV: "garbage"})


class TestParseParentPid:
    def test_valid(self):
        assert parse_parent_pid(["1234"]) == 1234

    def test_missing(self):
        with pytest.raises(WatchdogFailure, match="missing"):
            parse_parent_pid([])

    def test_not_a_number(self):
        with pytest.raises(WatchdogFailure, match="invalid parent pid"):
            parse_parent_pid(["abc"])


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
class TestSignalHandlers:
    @pytest.fixture(autouse=True)
    def restore_handlers(self):
        signums = (signal.SIGINT, signal.SIGTERM)
        previous = {signum: signal.getsignal(signum) for signum in signums}
        yield
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def test_signals_request_stop(self):
        engine = Mock()

        stop = install_signal_handlers()
        stop.attach(engine)
        signal.getsignal(signal.SIGTERM)(signal.SIGTERM, None)
        signal.getsignal(signal.SIGINT)(signal.SIGINT, None)

        assert engine.request_stop.call_count == 2

    def test_signal_before_engine_exists(self):
        engine = Mock()

        stop = install_signal_handlers()
        os.kill(os.getpid(), signal.SIGINT)
        stop.attach(engine)

        assert stop.received
        engine.request_stop.assert_called_once()

    def test_attach_without_signal(self):
        engine = Mock()

        StopSignal().attach(engine)

        engine.request_stop.assert_not_called()


class TestRunWorker:
    """Test the worker main routine."""

    @pytest.fixture
    def engine(self):
        engine = Mock()
        with (
            patch("tunnel_provider.worker.ProcessWatchdog") as watchdog,
            patch("tunnel_provider.worker.get_backend") as get_backend,
            patch("tunnel_provider.worker.install_signal_handlers") as install,
            patch("tunnel_provider.worker.setup_logging"),
        ):
            get_backend.return_value.create_engine.return_value = engine
            engine.watchdog = watchdog
            engine.get_backend = get_backend
            engine.install = install
            yield engine

    def test_success(self, worker_env, engine, ssh_descriptor):
        assert run_worker(["4321"]) == 0

        engine.watchdog.assert_called_once_with(4321, ssh_descriptor.watchdog_interval)
        engine.watchdog.return_value.start.assert_called_once()
        engine.get_backend.return_value.create_engine.assert_called_once_with(
            ssh_descriptor
        )
        engine.run_foreground.assert_called_once()
        engine.install.return_value.attach.assert_called_once_with(engine)

    def test_signal_handlers_precede_watchdog(self, worker_env, engine):
        calls = Mock()
        calls.attach_mock(engine.install, "install")
        calls.attach_mock(engine.watchdog.return_value.start, "start_watchdog")

        run_worker(["4321"])

        assert [name for name, _, _ in calls.mock_calls][:2] == [
            "install",
            "start_watchdog",
        ]

    def test_clears_environment(self, worker_env, engine):
        run_worker(["4321"])

        assert TUNNEL_TYPE_ENV not in os.environ
        assert TUNNEL_CONF_ENV not in os.environ

    def test_invalid_descriptor(self, monkeypatch, engine):
        monkeypatch.setenv(TUNNEL_TYPE_ENV, "ssh")
        monkeypatch.setenv(TUNNEL_CONF_ENV, "{}")

        assert run_worker(["4321"]) == 1
        engine.run_foreground.assert_not_called()

    def test_missing_parent_pid(self, worker_env, engine):
        assert run_worker([]) == 1
        engine.run_foreground.assert_not_called()

    def test_dead_parent(self, worker_env, engine):
        engine.watchdog.return_value.start.side_effect = WatchdogFailure("gone")

        assert run_worker(["4321"]) == 1
        engine.run_foreground.assert_not_called()

    def test_engine_failure(self, worker_env, engine):
        engine.run_foreground.side_effect = EngineError("self-test failed")
        assert run_worker(["4321"]) == 1

    def test_unexpected_failure(self, worker_env, engine):
        engine.run_foreground.side_effect = RuntimeError("bug")
        assert run_worker(["4321"]) == 1
