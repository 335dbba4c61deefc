#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT))

from app.core.config import CONVERSATION_STALE_HOURS  # noqa: E402
from app.core.database import SessionLocal  # noqa: E402
from app.core.logging_setup import configure_logging  # noqa: E402
from app.services.conversations import abandon_stale  # noqa: E402


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Mark idle WhatsApp conversations as abandoned.")
    parser.add_argument("--tenant", type=int, help="Only this tenant ID (default: all tenants)")
    parser.add_argument(
        "--hours",
        type=int,
        default=CONVERSATION_STALE_HOURS,
        help=f"Hours without messages before a conversation is abandoned (default: {CONVERSATION_STALE_HOURS})",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None, session_factory=SessionLocal) -> int:
    args = parse_args(argv)
    if args.hours < 1:
        print("--hours must be at least 1")
        return 1

    configure_logging()
    db = session_factory()
    try:
        expired = abandon_stale(db, args.tenant, args.hours)
    finally:
        db.close()

    scope = f"tenant={args.tenant}" if args.tenant is not None else "all tenants"
    print(f"Abandoned {expired} conversation(s) idle for {args.hours}h ({scope})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
