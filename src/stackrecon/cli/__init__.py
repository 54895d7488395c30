"""Command line front end."""

from stackrecon.cli.main import cli, main

__all__ = ['cli', 'main']
