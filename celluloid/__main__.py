"""Entry point for running celluloid as a module.

This module allows celluloid to be run as a Python module using the -m flag:
    python -m celluloid
"""

from . import cli

if __name__ == "__main__":
    cli._main()
