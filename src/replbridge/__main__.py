"""Module entrypoint for `python -m replbridge`."""

from __future__ import annotations

from replbridge.cli import main


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except KeyboardInterrupt:
        raise SystemExit(130)
