"""
Entry point for running Home Registry backup tooling as a module.

Usage:
    python -m homeregistry [command] [options]
"""

from homeregistry.cli import main

if __name__ == "__main__":
    main()
