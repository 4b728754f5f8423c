"""CLI entry point for nero.cli module.

Enables execution via: python -m nero.cli <command>
"""

from nero.cli.reconcile import main

if __name__ == "__main__":
    main()
