"""
Entry point for running diarymind as a module: python -m diarymind
"""

from diarymind.cli.commands import app

if __name__ == "__main__":
    app()
