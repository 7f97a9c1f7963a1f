"""
Defines the application's version string.

This is the single source of truth for the application's version number.
It is used in the GUI title, in the worker handshake log line, and for packaging.
"""

__version__ = "0.4.0"
