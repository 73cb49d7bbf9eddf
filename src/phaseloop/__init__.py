"""Phaseloop: supervisor for long-running, multi-phase agent runs."""

__version__ = "0.1.0"
