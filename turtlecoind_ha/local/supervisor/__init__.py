"""
The Supervisor package.
Manages the lifecycle of a single TurtleCoind process.

This package contains the central NodeSupervisor class and its helper modules,
which together handle sanitizing, launching, health checking and stopping the
daemon, and publishing what happens as signals.
"""
from .events import NodeSignal, SignalDispatcher, SignalKind
from .health import DesyncReport, HealthSnapshot
from .state import LifecycleState
from .supervisor import NodeSupervisor

__all__ = [
    'NodeSupervisor', 'NodeSignal', 'SignalDispatcher', 'SignalKind',
    'HealthSnapshot', 'DesyncReport', 'LifecycleState',
]
