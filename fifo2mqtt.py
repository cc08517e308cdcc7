#!/usr/bin/env python3
"""fifo2mqtt: named pipe to MQTT bridge.

Reads ``TOPIC CONTENT`` lines from one or more FIFOs and publishes them to one
or more MQTT brokers. Arguments are ``key.path=value`` overrides or a bare
broker URL, e.g. ``fifo2mqtt mqtt://broker:1883 sources.0.path=/tmp/in``.
"""

import logging
import os
import signal
import sys
import threading
from pathlib import Path

from src.bridge import FifoMqttBridge
from src.config import DEFAULT_NAME, NAME_ENV, ConfigurationError, load_config
from src.lifecycle import EXIT_ERROR, EXIT_SIGNAL_BASE

SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


def setup_logging(level: str, log_file: str | None = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        handlers=handlers,
        force=True,
    )


def register_handlers(stop, on_stopped) -> None:
    """Route signals and uncaught errors from any thread through ``stop``."""

    def on_signal(signum, frame):
        sig_name = signal.Signals(signum).name
        stop(EXIT_SIGNAL_BASE + signum, f"Signal {sig_name}", on_stopped)

    def on_uncaught(exc_type, exc, tb):
        logging.getLogger(__name__).debug("Uncaught exception", exc_info=(exc_type, exc, tb))
        stop(EXIT_ERROR, exc, on_stopped)

    def on_thread_uncaught(args):
        if args.exc_type is SystemExit:
            return
        on_uncaught(args.exc_type, args.exc_value, args.exc_traceback)

    for signum in SIGNALS:
        signal.signal(signum, on_signal)
    sys.excepthook = on_uncaught
    threading.excepthook = on_thread_uncaught


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    name = os.environ.get(NAME_ENV) or DEFAULT_NAME

    try:
        logging_config = load_config(args).logging
        setup_logging(logging_config.level, logging_config.file)
    except ConfigurationError:
        # bridge.start() raises it again and stops with EXIT_ERROR
        setup_logging("INFO")

    finished = threading.Event()
    exit_code = [EXIT_ERROR]

    def on_stopped(code: int) -> None:
        exit_code[0] = code
        finished.set()

    bridge = FifoMqttBridge(name, on_exit=on_stopped, log=logging.getLogger(name))
    register_handlers(bridge.stop, on_stopped)

    try:
        bridge.start(args)
    except Exception as e:
        bridge.stop(EXIT_ERROR, e, on_stopped)

    finished.wait()
    return exit_code[0]


if __name__ == "__main__":
    sys.exit(main())
