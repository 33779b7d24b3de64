"""bgx - background task executor with structured logging."""

__version__ = "0.1.0"
