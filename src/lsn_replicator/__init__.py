"""Logical replication based change-file replicator for the API database."""


def main() -> int:
    """Entrypoint proxy that defers importing the CLI until needed."""

    from .cli import main as _cli_main

    return _cli_main()


__all__ = ["main"]
