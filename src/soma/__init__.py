"""Soma - memory core for a desktop assistant."""

__version__ = "0.1.0"
