"""FIFO to MQTT bridge.

Builds one publisher per configured target and one provider per configured
source, forwards every message read from any source to every target, and
coordinates shutdown so the process only exits once all of them have stopped.
"""

import logging
import threading
from typing import Callable

from src.config import Configuration, ConfigResolver, DEFAULT_NAME
from src.lifecycle import EXIT_ERROR, EXIT_SUCCESS, LifecycleState
from src.publisher import MqttPublisher
from src.source import SourceProvider

logger = logging.getLogger(__name__)


def describe_cause(code: int, cause) -> tuple[int, str]:
    """Return the log level and message for a stop cause."""
    if code == EXIT_ERROR:
        if isinstance(cause, BaseException):
            return logging.ERROR, f"{type(cause).__name__}: {cause}"
        return logging.ERROR, str(cause)
    return logging.INFO, str(cause)


class FifoMqttBridge:
    def __init__(
        self,
        name: str = DEFAULT_NAME,
        on_exit: Callable[[int], None] | None = None,
        log: logging.Logger | None = None,
    ):
        self.name = name
        self.on_exit = on_exit
        self.log = log or logger
        self.config: Configuration | None = None
        self.providers: list[SourceProvider] = []
        self.publishers: list[MqttPublisher] = []
        self._state = LifecycleState.STOPPED
        self._lock = threading.Lock()
        self._pending = 0
        self._timer: threading.Timer | None = None
        self._on_stopped: Callable[[int], None] | None = None
        self._code = EXIT_SUCCESS

    @property
    def state(self) -> LifecycleState:
        return self._state

    def start(self, args=()) -> None:
        with self._lock:
            if self._state is not LifecycleState.STOPPED:
                self.log.debug("Bridge is already %s", self._state.value)
                return
            self._state = LifecycleState.STARTING
        self.log.info("Starting")

        config = ConfigResolver(self.log.getChild("config")).resolve(args)
        self.config = config

        for target in config.targets:
            self.publishers.append(MqttPublisher(self.name, target, log=self.log.getChild("mqtt")))
        for source in config.sources:
            self.providers.append(
                SourceProvider(
                    source,
                    self._fan_out,
                    self._on_source_closed,
                    default_separator=config.topic_separator,
                    log=self.log.getChild("source"),
                )
            )

        for startable in [*self.publishers, *self.providers]:
            if self._state is not LifecycleState.STARTING:
                self.log.debug("Stopped while starting")
                break
            startable.start()
            if self._state is not LifecycleState.STARTING:
                # stop() may have counted this instance before it started
                startable.stop(self._code, "Stopped while starting")

        with self._lock:
            if self._state is LifecycleState.STARTING:
                self._state = LifecycleState.RUNNING
        self.log.debug("Started with %d source(s) and %d target(s)", len(self.providers), len(self.publishers))

    def _fan_out(self, topic: str, content: str | None) -> None:
        for publisher in list(self.publishers):
            publisher.publish(topic, content)

    def _on_source_closed(self, path: str) -> None:
        self.stop(EXIT_SUCCESS, f"{path} was closed", self.on_exit)

    def stop(self, code: int, cause, on_completion: Callable[[int], None] | None = None) -> None:
        with self._lock:
            if not self._state.active:
                return
            self._state = LifecycleState.STOPPING
        self.log.debug("Stopping")

        level, message = describe_cause(code, cause)
        self.log.log(level, message)

        instances = [*self.providers, *self.publishers]
        pending = [instance for instance in instances if instance.state is not LifecycleState.STOPPED]
        with self._lock:
            self._code = code
            self._on_stopped = on_completion
            self._pending = len(pending)

        if not pending:
            self._finish()
            return

        timeout = self.config.shutdown_timeout if self.config else None
        if timeout:
            self._timer = threading.Timer(timeout, self._on_timeout)
            self._timer.daemon = True
            self._timer.start()

        for instance in pending:
            instance.stop(code, message, self._instance_stopped)

    def _instance_stopped(self) -> None:
        with self._lock:
            self._pending -= 1
            done = self._pending <= 0
        if done:
            self._finish()

    def _on_timeout(self) -> None:
        self.log.warning("Shutdown timed out, %d instance(s) did not stop", self._pending)
        self._finish()

    def _finish(self) -> None:
        with self._lock:
            if self._state is not LifecycleState.STOPPING:
                return
            self._state = LifecycleState.STOPPED
            code = self._code
            on_stopped, self._on_stopped = self._on_stopped, None
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        self.providers = []
        self.publishers = []
        self.log.info("Stopped %s", "successfully" if code == EXIT_SUCCESS else f"with exit code {code}")
        if on_stopped:
            on_stopped(code)
