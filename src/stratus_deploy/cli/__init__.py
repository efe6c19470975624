"""Command line interface."""

from stratus_deploy.cli.main import cli, main

__all__ = ['cli', 'main']
