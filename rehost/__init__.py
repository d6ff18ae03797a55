"""Resumable, rate-limited re-hosting of attachment images from a tabular source."""

__version__ = "0.3.0"
