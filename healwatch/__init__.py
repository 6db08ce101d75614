"""healwatch - adaptive monitoring and self-healing engine."""

__version__ = "0.4.0"
