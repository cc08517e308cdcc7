"""Named pipe source: reads lines from a FIFO and frames them as messages.

Each line is ``TOPIC<separator>CONTENT`` or a bare ``TOPIC``. When the writer
side of the pipe closes, the configured close action decides whether the
source stops, reopens, or asks the bridge to shut down.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Callable

from src.config import CloseAction, SourceSpec
from src.lifecycle import LifecycleState

logger = logging.getLogger(__name__)

DEFAULT_TOPIC_SEPARATOR = " "
FIFO_MODE = 0o622
ENCODING = "utf-8"
BACKOFF_BASE = 1
BACKOFF_MAX = 60


def split_line(line: str, separator: str) -> tuple[str, str | None]:
    """Split at the first separator found past index 0, else the line is the topic."""
    index = line.find(separator)
    if index > 0:
        return line[:index], line[index + len(separator):]
    return line, None


class _PathAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return "%s %s" % (self.extra["path"].replace("%", "%%"), msg), kwargs


class SourceProvider:
    def __init__(
        self,
        spec: SourceSpec,
        on_message: Callable[[str, str | None], None],
        on_close: Callable[[str], None],
        default_separator: str | None = None,
        log: logging.Logger | None = None,
    ):
        self.spec = spec
        self.path = spec.path
        if spec.topic_separator is not None:
            self.separator = spec.topic_separator
        elif default_separator is not None:
            self.separator = default_separator
        else:
            self.separator = DEFAULT_TOPIC_SEPARATOR
        self.on_message = on_message
        self.on_close = on_close
        self.log = _PathAdapter(log or logger, {"path": self.path})
        self._state = LifecycleState.STOPPED
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self.log.debug("Created provider")

    @property
    def state(self) -> LifecycleState:
        return self._state

    def start(self) -> None:
        with self._lock:
            if self._state is not LifecycleState.STOPPED:
                self.log.debug("Source is already %s", self._state.value)
                return
            self._state = LifecycleState.STARTING
        self._stop_event.clear()
        self.log.debug("Source is opening")
        self._prepare()
        self._thread = threading.Thread(target=self._run, name=f"source:{self.path}", daemon=True)
        with self._lock:
            if self._state is not LifecycleState.STARTING:
                return
            self._state = LifecycleState.RUNNING
        self._thread.start()
        self.log.info("Source is open")

    def _prepare(self) -> None:
        path = Path(self.path)
        if not path.exists():
            self.log.debug("Creating named pipe")
            os.mkfifo(path, FIFO_MODE)
        if not path.is_fifo():
            self.log.warning("Source is not a named pipe")

    def _run(self) -> None:
        """Reader loop; one iteration per open of the pipe."""
        delay = BACKOFF_BASE
        while True:
            opened = self._read()
            action = self._after_close()
            if action is not CloseAction.REOPEN:
                return
            if opened:
                delay = BACKOFF_BASE
            else:
                self.log.warning("Reopening source in %ds", delay)
                if self._stop_event.wait(delay):
                    return
                delay = min(delay * 2, BACKOFF_MAX)
            self.log.debug("Reopening source")
            self._prepare()
            with self._lock:
                if self._state is not LifecycleState.RUNNING:
                    return

    def _read(self) -> bool:
        """Read one stream to its end; False when the pipe could not be opened."""
        # Blocks until a writer opens the pipe
        try:
            stream = open(self.path, encoding=ENCODING, errors="replace")
        except FileNotFoundError:
            raise
        except OSError as e:
            self.log.error("Cannot open source: %s", e)
            return False
        with stream:
            for line in stream:
                if self._state is not LifecycleState.RUNNING:
                    break
                self._handle_line(line.removesuffix("\n"))
        self.log.debug("Stream is closed")
        return True

    def _handle_line(self, line: str) -> None:
        self.log.debug("Line: %s", line)
        topic, content = split_line(line, self.separator)
        self.on_message(topic, content)

    def _after_close(self) -> CloseAction | None:
        with self._lock:
            if self._state is not LifecycleState.RUNNING:
                return None
            action = self.spec.on_close
            if action is CloseAction.IGNORE:
                self._state = LifecycleState.STOPPED
        if action is CloseAction.SHUTDOWN:
            self.on_close(self.path)
        return action

    def stop(self, code: int | None = None, cause: str | None = None, on_completion: Callable[[], None] | None = None) -> None:
        with self._lock:
            if not self._state.active:
                return
            self._state = LifecycleState.STOPPING
        self.log.debug("Source is closing")
        self._stop_event.set()
        self._release()
        with self._lock:
            self._state = LifecycleState.STOPPED
        self.log.info("Source is closed")
        if on_completion:
            on_completion()

    def _release(self) -> None:
        """Write a newline into the pipe so a reader blocked in open() or read() wakes up."""
        if not Path(self.path).is_fifo():
            return
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_NONBLOCK)
        except OSError as e:
            # ENXIO: nobody has the pipe open for reading
            self.log.debug("No reader to release: %s", e)
            return
        try:
            os.write(fd, b"\n")
        finally:
            os.close(fd)
