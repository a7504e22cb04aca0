from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _bootstrap_app():
    from escrowhub import create_app

    app = create_app()
    app.app_context().push()
    return app


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Audit paid orders against order items and escrow records.")
    parser.add_argument("--since", default="", help="Only audit orders paid at or after this ISO timestamp.")
    parser.add_argument("--persist", action="store_true", help="Persist a row in reconciliation_reports.")
    args = parser.parse_args(argv)

    since = datetime.fromisoformat(args.since) if args.since else None
    _bootstrap_app()
    from escrowhub.services.reconciliation_service import persist_report, reconcile_escrow_ledger

    summary = reconcile_escrow_ledger(since=since)
    if args.persist:
        row = persist_report(summary, trigger="cli", since=since)
        summary["report_id"] = int(row.id)

    print(json.dumps(summary, indent=2))
    return 0 if int(summary.get("drift_count") or 0) == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
