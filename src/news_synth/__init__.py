"""Candidate news queue and two-pass article synthesis."""

__version__ = "0.1.0"
