"""Lifecycle states and process exit codes shared by all bridge components."""

from enum import Enum

EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_SIGNAL_BASE = 128


class LifecycleState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"

    @property
    def active(self) -> bool:
        return self in (LifecycleState.STARTING, LifecycleState.RUNNING)
