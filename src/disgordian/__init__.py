"""Disgordian — a Discord gateway bot built around one duplex session."""

__version__ = "0.1.0"
