"""CLI entry point for python -m renderpipe"""
from renderpipe.cli.commands import app

if __name__ == "__main__":
    app()
