"""
Memory client entry point - ``python -m memory_client <command>``.

Typical usage::

    python -m memory_client health
    python -m memory_client facts user-123
    python -m memory_client summary user-123

Run ``python -m memory_client --help`` for the full command list.
"""

from memory_client.cli import cli

if __name__ == "__main__":
    cli()
