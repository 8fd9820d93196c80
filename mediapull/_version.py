"""
Defines the application's version string.

This is the single source of truth for the application's version number.
It is used in the CLI, in the package metadata, and in log output.
"""

__version__ = "0.4.0"
