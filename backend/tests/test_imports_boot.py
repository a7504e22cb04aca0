from __future__ import annotations

import importlib
import unittest

from flask import Flask


class ImportsBootTestCase(unittest.TestCase):
    def test_import_create_app(self):
        module = importlib.import_module("escrowhub")
        create_app = getattr(module, "create_app", None)
        self.assertTrue(callable(create_app))

    def test_import_segments(self):
        for name in ("segment_orders_api", "segment_payments", "segment_shipper", "segment_admin_ops"):
            module = importlib.import_module(f"escrowhub.segments.{name}")
            self.assertIsNotNone(module)

    def test_celery_beat_schedule(self):
        from escrowhub.celery_app import create_celery_app

        celery = create_celery_app(Flask("escrowhub-test"))
        tasks = {entry["task"] for entry in celery.conf.beat_schedule.values()}
        self.assertEqual(
            tasks,
            {
                "escrowhub.tasks.escrow_tasks.release_sweep",
                "escrowhub.tasks.escrow_tasks.expiry_sweep",
                "escrowhub.tasks.escrow_tasks.reconcile_ledger",
            },
        )


if __name__ == "__main__":
    unittest.main()
