from __future__ import annotations

import json
from datetime import datetime

from celery import Celery
from celery.signals import task_failure, task_retry

from escrowhub.utils.config import env_int, env_str

_SIGNALS_BOUND = False

TASK_PREFIX = "escrowhub.tasks.escrow_tasks"


def _broker_url() -> str:
    return env_str("CELERY_BROKER_URL") or env_str("REDIS_URL") or "redis://localhost:6379/0"


def _result_backend(broker_url: str) -> str:
    return env_str("CELERY_RESULT_BACKEND") or env_str("REDIS_URL") or broker_url


def _beat_schedule() -> dict:
    """Sweeps run often; the ledger audit runs daily."""
    return {
        "escrow-release-sweep": {
            "task": f"{TASK_PREFIX}.release_sweep",
            "schedule": float(env_int("RELEASE_SWEEP_INTERVAL_SECONDS", 900, minimum=60, maximum=86400)),
        },
        "order-expiry-sweep": {
            "task": f"{TASK_PREFIX}.expiry_sweep",
            "schedule": float(env_int("EXPIRY_SWEEP_INTERVAL_SECONDS", 300, minimum=30, maximum=86400)),
        },
        "escrow-ledger-reconcile": {
            "task": f"{TASK_PREFIX}.reconcile_ledger",
            "schedule": float(env_int("RECONCILE_INTERVAL_SECONDS", 86400, minimum=3600, maximum=7 * 86400)),
        },
    }


def _task_event(event: str, *, task_name: str, task_id, kwargs, **extra) -> str:
    payload = {
        "event": event,
        "task_name": task_name or "",
        "task_id": str(task_id or ""),
        "trace_id": str((kwargs or {}).get("trace_id") or "") if isinstance(kwargs, dict) else "",
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra)
    return json.dumps(payload, default=str)


def _bind_task_observers(flask_app) -> None:
    global _SIGNALS_BOUND
    if _SIGNALS_BOUND:
        return

    @task_failure.connect(weak=False)
    def _on_task_failure(sender=None, task_id=None, exception=None, args=None, kwargs=None, einfo=None, **extra):
        flask_app.logger.error(
            _task_event(
                "celery_task_failure",
                task_name=getattr(sender, "name", ""),
                task_id=task_id,
                kwargs=kwargs,
                exception=repr(exception),
            )
        )

    @task_retry.connect(weak=False)
    def _on_task_retry(request=None, reason=None, einfo=None, **extra):
        flask_app.logger.warning(
            _task_event(
                "celery_task_retry",
                task_name=str(getattr(request, "task", "") or ""),
                task_id=getattr(request, "id", ""),
                kwargs=getattr(request, "kwargs", None),
                reason=str(reason or ""),
                retry_count=int(getattr(request, "retries", 0) or 0),
            )
        )

    _SIGNALS_BOUND = True


def create_celery_app(flask_app) -> Celery:
    broker = _broker_url()
    celery = Celery(flask_app.import_name, broker=broker, backend=_result_backend(broker))
    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_track_started=True,
        # acked after completion; sweeps must stay idempotent
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone="UTC",
        enable_utc=True,
        beat_schedule=_beat_schedule(),
    )
    celery.conf.update(flask_app.config.get("CELERY", {}))

    class FlaskContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = FlaskContextTask
    celery.autodiscover_tasks(["escrowhub.tasks"], related_name="escrow_tasks")
    _bind_task_observers(flask_app)
    return celery
