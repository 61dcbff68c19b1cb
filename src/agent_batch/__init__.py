"""Crash-resumable batch runner for external CLI agents."""

__version__ = "0.1.0"
