"""Application entry point."""

from __future__ import annotations

from typing import Sequence

from mytunnel_ctl.cli import parse_args, run
from mytunnel_ctl.core.logging_setup import setup_logging
from mytunnel_ctl.core.storage import ensure_dirs


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    ensure_dirs()
    setup_logging(verbose=args.verbose)
    return run(args)


if __name__ == "__main__":
    raise SystemExit(main())
