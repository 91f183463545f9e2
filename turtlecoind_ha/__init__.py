"""
turtlecoind-ha: keeps a TurtleCoind daemon running and healthy.
"""

__version__ = "0.4.0"

from turtlecoind_ha.local.supervisor import NodeSupervisor, SignalKind

__all__ = ["NodeSupervisor", "SignalKind", "__version__"]
