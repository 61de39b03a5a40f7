"""Module entrypoint for ``python -m testrepository``."""

from __future__ import annotations

from testrepository.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
