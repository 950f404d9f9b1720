"""
Logging module for the application.
This module provides functionality to set up console logging on stderr.
"""

from .setup import setup_logging, resolve_level

__all__ = ["setup_logging", "resolve_level"]
