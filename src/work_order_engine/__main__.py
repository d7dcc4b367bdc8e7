"""Module entrypoint for ``python -m work_order_engine``."""

from __future__ import annotations

from work_order_engine.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
