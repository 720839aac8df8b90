"""Islet: live session state and permission approvals for AI coding agents."""

__version__ = "0.1.0"
