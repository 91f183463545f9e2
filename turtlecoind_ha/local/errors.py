"""
Error taxonomy for the TurtleCoind supervisor.

None of these are allowed to escape the supervisor's control flow; they are
logged and handed to listeners as the payload of an `error` signal.
"""


class NodeSupervisorError(Exception):
    """Base class for every error raised or emitted by the supervisor."""


class FatalConfigError(NodeSupervisorError):
    """The configuration cannot work (e.g. the daemon binary is missing). Never retried."""


class TransientStartupError(NodeSupervisorError):
    """Startup was blocked by a stale resource; start() will be retried after a delay."""


class HealthCheckFailure(NodeSupervisorError):
    """
    A single health cycle failed: unreachable RPC, inconsistent results or an
    unanswered liveness probe. Accumulated by the debouncer, never fatal on its own.
    """


class ProcessTermination(NodeSupervisorError):
    """The daemon's console channel broke."""


class ConfigValidationError(NodeSupervisorError, ValueError):
    """A configuration value is out of range."""
