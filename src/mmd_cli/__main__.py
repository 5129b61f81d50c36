"""Entry point: ``python -m mmd_cli``."""

from mmd_cli.cli import cli

if __name__ == "__main__":
    cli()
