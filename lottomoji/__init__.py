"""Periodic emoji lottery draw engine."""

__version__ = "0.1.0"
