"""Circles node: proposal lifecycle and collaborative ranking service."""

__version__ = "0.1.0"
