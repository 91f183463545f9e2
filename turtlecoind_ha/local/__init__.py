"""
Local package for the TurtleCoind supervisor.

This package provides the merged runtime settings through `effective_settings`
and the immutable per-instance `NodeConfig`.
"""

from .config import NodeConfig, effective_settings

__all__ = ["NodeConfig", "effective_settings"]
