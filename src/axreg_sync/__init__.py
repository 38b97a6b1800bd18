"""Synchronizes AXREG transfer PDFs into the local document storage."""

__version__ = "0.1.0"
