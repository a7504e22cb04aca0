from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

EXPECTED_TASKS = ("release_sweep", "expiry_sweep", "reconcile_ledger")


def main() -> int:
    """Boot the worker entrypoint and confirm every escrow sweep is scheduled and registered."""
    try:
        from celery_app import celery
        from escrowhub.celery_app import TASK_PREFIX
        import escrowhub.tasks.escrow_tasks  # noqa: F401  registers the shared tasks
    except Exception as exc:
        print(f"error: failed to import celery_app:celery -> {exc}", file=sys.stderr)
        return 1

    scheduled = {entry["task"] for entry in (celery.conf.beat_schedule or {}).values()}
    missing = []
    for name in EXPECTED_TASKS:
        task_name = f"{TASK_PREFIX}.{name}"
        if task_name not in scheduled:
            missing.append(f"{name}:not_scheduled")
        if task_name not in celery.tasks:
            missing.append(f"{name}:not_registered")
    if missing:
        print(f"error: {','.join(missing)}", file=sys.stderr)
        return 1
    print(f"ok: celery_app:celery beat={','.join(sorted(scheduled))}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
