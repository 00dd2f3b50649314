"""Module entrypoint for ``python -m fanout_ci``."""

from __future__ import annotations

from fanout_ci.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
