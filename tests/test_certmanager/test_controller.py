"""Tests for the scheduler-driven control loop."""

import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from certmanager.controller import RESYNC_JOB_ID, Controller, job_id
from certmanager.exceptions import (
    IssuanceError,
    NotFound,
    StoreError,
    ValidationError,
)
from certmanager.models import NO_REQUEUE, CertificateRequest, EventKind, requeue_after


def make_request(name="example"):
    return CertificateRequest(
        namespace="apps", name=name, dns_name="example.com",
        validity="1h", secret_ref="example-tls",
    )


class TestController(unittest.TestCase):

    def setUp(self):
        self.reconciler = MagicMock()
        self.reconciler.reconcile.return_value = NO_REQUEUE
        self.requests = MagicMock()
        self.scheduler = MagicMock()
        self.scheduler.running = False
        self.scheduler.get_job.return_value = None
        self.controller = Controller(
            self.reconciler, self.requests, scheduler=self.scheduler,
            backoff=[5, 15, 60],
        )

    def scheduled(self):
        """(args, run_date) of the most recent add_job call."""
        kwargs = self.scheduler.add_job.call_args.kwargs
        return kwargs["args"], kwargs["run_date"]

    def test_job_id(self):
        self.assertEqual(job_id("apps", "example"), "reconcile:apps/example")

    def test_enqueue_schedules_one_shot_job(self):
        self.controller.enqueue("apps", "example", EventKind.CREATED)
        kwargs = self.scheduler.add_job.call_args.kwargs
        self.assertEqual(kwargs["trigger"], "date")
        self.assertEqual(kwargs["id"], "reconcile:apps/example")
        self.assertTrue(kwargs["replace_existing"])
        self.assertEqual(kwargs["args"], ["apps", "example", EventKind.CREATED])

    def test_pending_update_not_downgraded(self):
        pending = MagicMock()
        pending.args = ["apps", "example", EventKind.UPDATED]
        pending.next_run_time = None
        self.scheduler.get_job.return_value = pending

        self.controller.enqueue("apps", "example", EventKind.RESYNCED)

        args, _ = self.scheduled()
        self.assertEqual(args[2], EventKind.UPDATED)

    def test_pending_earlier_run_kept(self):
        earlier = datetime.now(timezone.utc)
        pending = MagicMock()
        pending.args = ["apps", "example", EventKind.RESYNCED]
        pending.next_run_time = earlier
        self.scheduler.get_job.return_value = pending

        self.controller.enqueue("apps", "example", EventKind.RESYNCED, delay=timedelta(hours=1))

        _, run_date = self.scheduled()
        self.assertEqual(run_date, earlier)

    def test_apply_enqueues_event(self):
        self.requests.apply.return_value = EventKind.CREATED
        self.assertEqual(self.controller.apply(make_request()), EventKind.CREATED)
        args, _ = self.scheduled()
        self.assertEqual(args[2], EventKind.CREATED)

    def test_apply_unchanged_not_enqueued(self):
        self.requests.apply.return_value = None
        self.assertIsNone(self.controller.apply(make_request()))
        self.scheduler.add_job.assert_not_called()

    def test_delete_enqueues_deleted(self):
        self.controller.delete("apps", "example")
        self.requests.mark_deleted.assert_called_once_with("apps", "example")
        args, _ = self.scheduled()
        self.assertEqual(args, ["apps", "example", EventKind.DELETED])

    def test_secret_changed_enqueues_all_referencing(self):
        self.requests.referencing_secret.return_value = [make_request("a"), make_request("b")]
        keys = self.controller.secret_changed("apps", "example-tls")
        self.assertEqual(keys, ["apps/a", "apps/b"])
        self.assertEqual(self.scheduler.add_job.call_count, 2)

    def test_resync_enqueues_every_request(self):
        self.requests.list_all.return_value = [make_request("a"), make_request("b")]
        self.controller.resync()
        ids = [c.kwargs["id"] for c in self.scheduler.add_job.call_args_list]
        self.assertEqual(ids, ["reconcile:apps/a", "reconcile:apps/b"])

    def test_start_adds_resync_job(self):
        self.requests.list_all.return_value = []
        self.controller.start()
        kwargs = self.scheduler.add_job.call_args.kwargs
        self.assertEqual(kwargs["id"], RESYNC_JOB_ID)
        self.assertEqual(kwargs["trigger"], "interval")
        self.scheduler.start.assert_called_once()

    def test_shutdown(self):
        self.scheduler.running = True
        self.controller.shutdown()
        self.scheduler.shutdown.assert_called_once_with(wait=True)

    def test_requeue_hint_schedules_resync(self):
        self.reconciler.reconcile.return_value = requeue_after(timedelta(hours=1))
        before = datetime.now(timezone.utc)

        self.controller.process("apps", "example", EventKind.CREATED)

        args, run_date = self.scheduled()
        self.assertEqual(args[2], EventKind.RESYNCED)
        self.assertGreaterEqual(run_date, before + timedelta(hours=1))

    def test_converged_not_rescheduled(self):
        self.controller.process("apps", "example", EventKind.CREATED)
        self.scheduler.add_job.assert_not_called()

    def test_retryable_error_backs_off(self):
        self.reconciler.reconcile.side_effect = StoreError("unavailable")
        delays = []
        for _ in range(4):
            before = datetime.now(timezone.utc)
            self.controller.process("apps", "example", EventKind.UPDATED)
            args, run_date = self.scheduled()
            self.assertEqual(args[2], EventKind.UPDATED)
            delays.append(round((run_date - before).total_seconds()))
        self.assertEqual(delays, [5, 15, 60, 60])

    def test_backoff_resets_after_success(self):
        self.reconciler.reconcile.side_effect = [IssuanceError("boom"), NO_REQUEUE, IssuanceError("boom")]
        self.controller.process("apps", "example", EventKind.CREATED)
        self.controller.process("apps", "example", EventKind.CREATED)
        before = datetime.now(timezone.utc)
        self.controller.process("apps", "example", EventKind.CREATED)
        _, run_date = self.scheduled()
        self.assertEqual(round((run_date - before).total_seconds()), 5)

    def test_non_retryable_error_dropped(self):
        self.reconciler.reconcile.side_effect = ValidationError("bad validity")
        self.controller.process("apps", "example", EventKind.CREATED)
        self.scheduler.add_job.assert_not_called()

    def test_not_found_dropped_when_request_gone(self):
        self.reconciler.reconcile.side_effect = NotFound("gone")
        self.requests.get.return_value = None
        self.controller.process("apps", "example", EventKind.CREATED)
        self.scheduler.add_job.assert_not_called()

    def test_not_found_retried_while_request_exists(self):
        self.reconciler.reconcile.side_effect = NotFound("workload apps/web not found")
        self.requests.get.return_value = make_request()
        before = datetime.now(timezone.utc)

        self.controller.process("apps", "example", EventKind.CREATED)

        args, run_date = self.scheduled()
        self.assertEqual(args[2], EventKind.CREATED)
        self.assertEqual(round((run_date - before).total_seconds()), 5)

    def test_request_locks_released(self):
        self.controller.process("apps", "a", EventKind.CREATED)
        self.reconciler.reconcile.side_effect = StoreError("unavailable")
        self.controller.process("apps", "b", EventKind.CREATED)
        self.assertEqual(self.controller._locks, {})

    def test_unexpected_error_retried(self):
        self.reconciler.reconcile.side_effect = RuntimeError("bug")
        with self.assertLogs("certmanager.controller", level="ERROR"):
            self.controller.process("apps", "example", EventKind.CREATED)
        self.scheduler.add_job.assert_called_once()


if __name__ == "__main__":
    unittest.main()
