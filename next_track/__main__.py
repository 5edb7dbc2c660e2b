"""Module entry point: python -m next_track ..."""

from __future__ import annotations

from next_track.cli import main


if __name__ == "__main__":
    raise SystemExit(main())
