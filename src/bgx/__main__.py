"""Entry point for running bgx as a module.

Usage:
    python -m bgx fork --task-name build -- make
    python -m bgx join --task-name build
"""

from bgx.cli import app

if __name__ == "__main__":
    app(prog_name="bgx")
