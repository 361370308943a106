"""
Entry point for running lifecycle_observer as a module.

Usage:
    python -m lifecycle_observer rules
    python -m lifecycle_observer detect --dry-run

This is equivalent to:
    python -m lifecycle_observer.cli.observer_cli [args]
"""

from lifecycle_observer.cli.observer_cli import main


if __name__ == "__main__":
    main()
