"""Tests for propagating secret versions to dependent workloads."""

import os
import tempfile
import unittest
from unittest.mock import MagicMock

from certmanager.exceptions import NotFound, PatchConflict
from certmanager.models import Container, EnvVar, Volume, Workload
from certmanager.notifier import DependentWorkloadNotifier, upsert_env
from certmanager.stores import WorkloadStore
from config.settings import CERTIFICATE_ENV_NAME


def make_workload(name="web", secret="example-tls", env=None):
    return Workload(
        namespace="apps",
        name=name,
        volumes=[Volume(name="tls", secret_name=secret)],
        containers=[
            Container(name="app", env=list(env or [])),
            Container(name="sidecar"),
        ],
    )


def env_values(workload, name=CERTIFICATE_ENV_NAME):
    return [[e.value for e in c.env if e.name == name] for c in workload.containers]


class TestUpsertEnv(unittest.TestCase):

    def test_appends_when_missing(self):
        workload = make_workload(env=[EnvVar("LOG_LEVEL", "info")])
        self.assertTrue(upsert_env(workload, CERTIFICATE_ENV_NAME, "7"))
        self.assertEqual(env_values(workload), [["7"], ["7"]])
        self.assertEqual(workload.containers[0].env[0].name, "LOG_LEVEL")

    def test_replaces_in_place(self):
        workload = make_workload(env=[EnvVar(CERTIFICATE_ENV_NAME, "3"), EnvVar("B", "x")])
        upsert_env(workload, CERTIFICATE_ENV_NAME, "4")
        self.assertEqual(workload.containers[0].env[0].value, "4")
        self.assertEqual(len(workload.containers[0].env), 2)

    def test_collapses_duplicates(self):
        workload = make_workload(env=[
            EnvVar(CERTIFICATE_ENV_NAME, "1"),
            EnvVar(CERTIFICATE_ENV_NAME, "2"),
        ])
        upsert_env(workload, CERTIFICATE_ENV_NAME, "5")
        self.assertEqual(env_values(workload)[0], ["5"])

    def test_unchanged(self):
        workload = make_workload(env=[EnvVar(CERTIFICATE_ENV_NAME, "9")])
        workload.containers[1].env.append(EnvVar(CERTIFICATE_ENV_NAME, "9"))
        self.assertFalse(upsert_env(workload, CERTIFICATE_ENV_NAME, "9"))


class TestDependentWorkloadNotifier(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = WorkloadStore(os.path.join(self.tmp.name, "workloads.json"))
        self.notifier = DependentWorkloadNotifier(self.store)

    def tearDown(self):
        self.tmp.cleanup()

    def test_only_dependents_patched(self):
        self.store.apply(make_workload("web"))
        self.store.apply(make_workload("api"))
        self.store.apply(make_workload("worker", secret="other-tls"))

        patched = self.notifier.notify("apps", "example-tls", "12")

        self.assertEqual(sorted(patched), ["api", "web"])
        self.assertEqual(env_values(self.store.get("apps", "web")), [["12"], ["12"]])
        self.assertEqual(env_values(self.store.get("apps", "worker")), [[], []])

    def test_repeat_notify_no_duplicates(self):
        self.store.apply(make_workload())
        self.notifier.notify("apps", "example-tls", "1")
        self.notifier.notify("apps", "example-tls", "2")
        self.assertEqual(env_values(self.store.get("apps", "web")), [["2"], ["2"]])

    def test_same_token_not_patched_again(self):
        self.store.apply(make_workload())
        self.notifier.notify("apps", "example-tls", "1")
        version = self.store.get("apps", "web").resource_version
        self.assertEqual(self.notifier.notify("apps", "example-tls", "1"), [])
        self.assertEqual(self.store.get("apps", "web").resource_version, version)

    def test_no_dependents(self):
        self.assertEqual(self.notifier.notify("apps", "example-tls", "1"), [])

    def test_conflict_retried_on_fresh_read(self):
        store = MagicMock()
        store.list.return_value = [make_workload()]
        store.get.return_value = make_workload(env=[EnvVar("ADDED", "1")])
        store.patch.side_effect = [PatchConflict("workload", "apps/web", "1", "2"), None]

        patched = DependentWorkloadNotifier(store).notify("apps", "example-tls", "8")

        self.assertEqual(patched, ["web"])
        self.assertEqual(store.patch.call_count, 2)
        written = store.patch.call_args[0][0]
        self.assertEqual([e.name for e in written.containers[0].env], ["ADDED", CERTIFICATE_ENV_NAME])

    def test_conflict_gives_up(self):
        store = MagicMock()
        store.list.return_value = [make_workload()]
        store.get.side_effect = lambda ns, name: make_workload()
        store.patch.side_effect = PatchConflict("workload", "apps/web", "1", "2")

        with self.assertRaises(PatchConflict):
            DependentWorkloadNotifier(store, conflict_retries=2).notify("apps", "example-tls", "8")
        self.assertEqual(store.patch.call_count, 3)

    def test_workload_stops_mounting_during_retry(self):
        store = MagicMock()
        store.list.return_value = [make_workload()]
        store.get.return_value = make_workload(secret="other-tls")
        store.patch.side_effect = PatchConflict("workload", "apps/web", "1", "2")

        self.assertEqual(DependentWorkloadNotifier(store).notify("apps", "example-tls", "8"), [])

    def test_deleted_workload_skipped(self):
        store = MagicMock()
        store.list.return_value = [make_workload("gone"), make_workload("live")]
        store.patch.side_effect = [NotFound("workload apps/gone not found"), None]

        patched = DependentWorkloadNotifier(store).notify("apps", "example-tls", "8")

        self.assertEqual(patched, ["live"])
        self.assertEqual(store.patch.call_count, 2)


if __name__ == "__main__":
    unittest.main()
