"""Run draws against the configured database.

Usage::

    python scripts/run_draw.py once [--operator ID]
    python scripts/run_draw.py loop [--iterations N]
"""

from __future__ import annotations

import argparse
import json
import logging
import threading

from lottomoji.config import Settings
from lottomoji.db.engine import get_sessionmaker, make_engine
from lottomoji.draw import DrawCoordinator
from lottomoji.store import SQLAlchemyDocumentStore
from lottomoji.workflows import manual_draw, run_cadence_loop


def build_coordinator(settings: Settings) -> DrawCoordinator:
    store = SQLAlchemyDocumentStore(
        get_sessionmaker(make_engine(settings.database_url)),
        max_attempts=settings.max_transaction_attempts,
    )
    return DrawCoordinator(store, settings=settings)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Settle emoji lottery draws.")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    once = sub.add_parser("once", help="settle the current window now")
    once.add_argument("--operator", default="cli", help="operator id for the request")

    loop = sub.add_parser("loop", help="settle every window until interrupted")
    loop.add_argument("--iterations", type=int, default=None)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    settings = Settings.from_env()
    coordinator = build_coordinator(settings)

    if args.command == "once":
        try:
            outcome = manual_draw(coordinator, args.operator)
        except PermissionError as exc:
            logging.getLogger(__name__).error(str(exc))
            return 2
        print(json.dumps(outcome, ensure_ascii=False))
        return 0 if outcome["success"] else 1

    stop = threading.Event()
    try:
        run_cadence_loop(coordinator, stop_event=stop, max_iterations=args.iterations)
    except KeyboardInterrupt:
        stop.set()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
