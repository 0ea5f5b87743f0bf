"""Prometheus proxy that serves queries across several past time windows."""

__version__ = "0.1.0"