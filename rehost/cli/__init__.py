"""CLI package public API."""

from rehost.cli.click_app import cli, main

__all__ = ["cli", "main"]
