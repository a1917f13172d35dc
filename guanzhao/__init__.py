"""Guanzhao: admission control for proactive engagement nudges."""

__version__ = "0.1.0"
