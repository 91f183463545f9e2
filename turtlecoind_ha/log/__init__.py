"""
Logging module for the supervisor.
This module provides the console logging setup and the optional Loki handler.
"""

from .setup import setup_logging

__all__ = ["setup_logging"]
