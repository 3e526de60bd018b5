from workloop.backends.base import (
    ProcessBusyError,
    ProcessError,
    ProcessExitError,
    ProcessKilledError,
    ProcessSpawnError,
    SessionResult,
    SupervisorClosedError,
)
from workloop.backends.claude import ClaudeSupervisor, StreamJsonTap, build_supervisor
from workloop.backends.process import ProcessSupervisor

__all__ = [
    "ClaudeSupervisor",
    "ProcessBusyError",
    "ProcessError",
    "ProcessExitError",
    "ProcessKilledError",
    "ProcessSpawnError",
    "ProcessSupervisor",
    "SessionResult",
    "StreamJsonTap",
    "SupervisorClosedError",
    "build_supervisor",
]
