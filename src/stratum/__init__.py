"""Stratum - versioned schema migrations for the document database."""

__version__ = "0.1.0"
