"""Unit tests for the fifo2mqtt.py entry point."""

import signal
import sys
import threading
from unittest.mock import MagicMock, patch

import pytest

import fifo2mqtt
from src.config import ConfigurationError
from src.lifecycle import EXIT_ERROR, EXIT_SUCCESS


@pytest.fixture
def handlers(monkeypatch):
    installed = {}
    monkeypatch.setattr(signal, "signal", lambda signum, handler: installed.__setitem__(signum, handler))
    monkeypatch.setattr(sys, "excepthook", sys.excepthook)
    monkeypatch.setattr(threading, "excepthook", threading.excepthook)
    return installed


class TestRegisterHandlers:
    @pytest.mark.parametrize("signum", [signal.SIGINT, signal.SIGTERM, signal.SIGHUP])
    def test_signal_maps_to_exit_code(self, handlers, signum):
        stop, on_stopped = MagicMock(), MagicMock()
        fifo2mqtt.register_handlers(stop, on_stopped)
        handlers[signum](signum, None)
        stop.assert_called_once_with(128 + signum, f"Signal {signal.Signals(signum).name}", on_stopped)

    def test_uncaught_error_stops_with_error_code(self, handlers):
        stop, on_stopped = MagicMock(), MagicMock()
        fifo2mqtt.register_handlers(stop, on_stopped)
        error = RuntimeError("boom")
        sys.excepthook(RuntimeError, error, None)
        stop.assert_called_once_with(EXIT_ERROR, error, on_stopped)

    def test_uncaught_thread_error_stops_with_error_code(self, handlers):
        stop, on_stopped = MagicMock(), MagicMock()
        fifo2mqtt.register_handlers(stop, on_stopped)
        error = FileNotFoundError("gone")
        threading.excepthook(MagicMock(exc_type=FileNotFoundError, exc_value=error, exc_traceback=None))
        stop.assert_called_once_with(EXIT_ERROR, error, on_stopped)


class FakeBridge:
    start_error = None

    def __init__(self, name, on_exit=None, log=None):
        self.name = name
        self.on_exit = on_exit

    def start(self, args):
        if self.start_error:
            raise self.start_error
        self.on_exit(EXIT_SUCCESS)

    def stop(self, code, cause, on_completion):
        on_completion(code)


@pytest.fixture
def patched_main():
    with patch("fifo2mqtt.register_handlers"), \
            patch("fifo2mqtt.setup_logging"), \
            patch("fifo2mqtt.load_config"):
        yield


def test_main_returns_bridge_exit_code(patched_main):
    with patch("fifo2mqtt.FifoMqttBridge", FakeBridge):
        assert fifo2mqtt.main(["mqtt://broker"]) == EXIT_SUCCESS


def test_main_start_failure_exits_with_error(patched_main):
    failing = type("FailingBridge", (FakeBridge,), {"start_error": RuntimeError("boom")})
    with patch("fifo2mqtt.FifoMqttBridge", failing):
        assert fifo2mqtt.main([]) == EXIT_ERROR


def test_main_uses_name_from_environment(patched_main, monkeypatch):
    monkeypatch.setenv("FIFO2MQTT_NAME", "custom")
    with patch("fifo2mqtt.FifoMqttBridge", side_effect=FakeBridge) as bridge_cls:
        fifo2mqtt.main([])
    assert bridge_cls.call_args.args[0] == "custom"


def test_main_config_error_still_sets_up_logging():
    with patch("fifo2mqtt.register_handlers"), \
            patch("fifo2mqtt.setup_logging") as setup_logging, \
            patch("fifo2mqtt.load_config", side_effect=ConfigurationError("bad")), \
            patch("fifo2mqtt.FifoMqttBridge", FakeBridge):
        fifo2mqtt.main([])
    setup_logging.assert_called_once_with("INFO")
