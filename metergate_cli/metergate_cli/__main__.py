"""Entry point for `python -m metergate_cli` and the `metergate` console script."""

from __future__ import annotations

from metergate_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
