"""Associative memory engine: decaying long-term memory with hybrid recall and consolidation."""

__version__ = "0.4.0"
