"""Module entrypoint for ``python -m merge_coordinator``."""

from __future__ import annotations

from merge_coordinator.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
