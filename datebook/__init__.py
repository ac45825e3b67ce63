"""Datebook: people, the dates that matter to them, and a merged timeline."""

__version__ = "0.1.0"
