"""Supervisory controller for AI coding-agent task backlogs."""

__version__ = "0.1.0"
