#!/usr/bin/env python3
"""
pyro-thor entry point
"""
from pyro_thor.cli import cli

if __name__ == '__main__':
    cli()
