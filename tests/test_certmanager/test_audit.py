"""Tests for the reconciler audit log."""

import os
import tempfile
import unittest

from certmanager.audit import AuditAction, AuditLog


class TestAuditLog(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.log = AuditLog(os.path.join(self.tmp.name, "audit", "audit.json"))

    def tearDown(self):
        self.tmp.cleanup()

    def test_newest_first(self):
        self.log.log(AuditAction.CERTIFICATE_ISSUE, "apps/a", "secret a-tls")
        self.log.log(AuditAction.CERTIFICATE_ROTATE, "apps/a", "secret a-tls")
        entries = self.log.list_all()
        self.assertEqual(
            [e.action for e in entries],
            [AuditAction.CERTIFICATE_ROTATE, AuditAction.CERTIFICATE_ISSUE],
        )

    def test_string_action(self):
        entry = self.log.log("certificate_purge", "apps/a")
        self.assertEqual(entry.action, AuditAction.CERTIFICATE_PURGE)

    def test_filter(self):
        self.log.log(AuditAction.CERTIFICATE_ISSUE, "apps/a")
        self.log.log(AuditAction.CERTIFICATE_ISSUE, "infra/b")
        self.log.log(AuditAction.WORKLOAD_RELOAD, "apps/a", "web")
        self.assertEqual(len(self.log.filter(action=AuditAction.CERTIFICATE_ISSUE)), 2)
        self.assertEqual(len(self.log.filter(target="APPS/")), 2)
        self.assertEqual(
            len(self.log.filter(action=AuditAction.WORKLOAD_RELOAD, target="apps/a")), 1,
        )

    def test_filter_since(self):
        old = self.log.log(AuditAction.CERTIFICATE_ISSUE, "apps/a")
        new = self.log.log(AuditAction.CERTIFICATE_ROTATE, "apps/a")
        entries = self.log.filter(since=new.timestamp)
        self.assertIn(new.entry_id, [e.entry_id for e in entries])
        self.assertTrue(all(e.timestamp >= new.timestamp for e in entries))
        self.assertEqual(len(self.log.filter(since=old.timestamp)), 2)

    def test_corrupt_log_kept_aside(self):
        path = os.path.join(self.tmp.name, "audit", "audit.json")
        with open(path, "w") as f:
            f.write("[{broken")

        with self.assertLogs("certmanager.audit", level="WARNING"):
            self.log.log(AuditAction.CERTIFICATE_ISSUE, "apps/a")

        with open(path + ".corrupt") as f:
            self.assertEqual(f.read(), "[{broken")
        self.assertEqual(len(self.log.list_all()), 1)

    def test_limit(self):
        for i in range(5):
            self.log.log(AuditAction.CERTIFICATE_ISSUE, f"apps/c{i}")
        self.assertEqual(len(self.log.list_all(limit=3)), 3)


if __name__ == "__main__":
    unittest.main()
