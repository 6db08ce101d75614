"""Command-line interface modules for healwatch."""

from .main import app

__all__ = ["app"]
