"""Allow ``python -m parley``."""

from parley.cli.main import cli


if __name__ == "__main__":
    cli()
