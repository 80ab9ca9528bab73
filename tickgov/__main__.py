"""Allow running tickgov as ``python -m tickgov``."""

from tickgov.cli import cli

if __name__ == "__main__":
    cli()
