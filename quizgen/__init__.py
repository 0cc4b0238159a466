"""Adaptive quiz generation and assessment engine."""

__version__ = "1.0.0"
