"""Command-line interface for PromptShield."""

from .main import cli, main

__all__ = ["cli", "main"]
