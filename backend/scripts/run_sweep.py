# backend/scripts/run_sweep.py
"""
Periodic sweep entry point (cron / scheduler).

    cd backend && python -m scripts.run_sweep
    cd backend && python -m scripts.run_sweep --at 2026-10-21T12:00:00
"""
import argparse
import json
from datetime import datetime

from atelier.api.deps import get_now, get_policy
from atelier.core.config import SessionLocal, settings
from atelier.core.logging import setup_logging
from atelier.engine.sweep import run_sweep


def main():
    p = argparse.ArgumentParser(description="Expire proposals, lapse ticket windows, auto-accept reviews, close overdue contracts.")
    p.add_argument("--at", type=datetime.fromisoformat, default=None,
                   help="naive UTC timestamp to sweep as of (default: now)")
    args = p.parse_args()

    setup_logging(settings.LOG_LEVEL)
    now = args.at or get_now()
    db = SessionLocal()
    try:
        report = run_sweep(db, now, get_policy())
    finally:
        db.close()
    print(json.dumps(report.as_dict()))


if __name__ == "__main__":
    main()
