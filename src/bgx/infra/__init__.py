"""Process infrastructure for bgx."""
