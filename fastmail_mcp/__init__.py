"""Fastmail mail, calendar and contact access for the fastmail-mcp server."""

__version__ = "0.1.0"
