"""Propagate certificate changes to workloads that mount the secret.

Updating an environment variable on the pod template makes the
orchestrator roll out a new workload generation, which remounts the
current secret content. The notifier never restarts anything itself.
"""

import logging

from certmanager.exceptions import NotFound, PatchConflict
from certmanager.models import EnvVar, Workload
from config.settings import CERTIFICATE_ENV_NAME, CONFLICT_RETRIES

logger = logging.getLogger(__name__)


def upsert_env(workload: Workload, env_name: str, value: str) -> bool:
    """Set ``env_name`` to ``value`` on every container of ``workload``.

    An existing entry is overwritten in place, otherwise one is appended,
    so each container carries exactly one entry with that name.

    Returns:
        True if any container changed.
    """
    changed = False
    for container in workload.containers:
        matches = [e for e in container.env if e.name == env_name]
        if not matches:
            container.env.append(EnvVar(name=env_name, value=value))
            changed = True
            continue
        if matches[0].value != value:
            matches[0].value = value
            changed = True
        if len(matches) > 1:
            # keep the first occurrence only
            first = matches[0]
            container.env = [e for e in container.env if e.name != env_name or e is first]
            changed = True
    return changed


class DependentWorkloadNotifier:
    """Stamp a secret's version token onto the workloads that mount it."""

    def __init__(
        self,
        workloads,
        env_name: str = CERTIFICATE_ENV_NAME,
        conflict_retries: int = CONFLICT_RETRIES,
    ):
        self.workloads = workloads
        self.env_name = env_name
        self.conflict_retries = conflict_retries

    def find_dependents(self, namespace: str, secret_ref: str) -> list[Workload]:
        """Workloads in ``namespace`` with a volume backed by ``secret_ref``."""
        return [w for w in self.workloads.list(namespace) if w.mounts_secret(secret_ref)]

    def notify(self, namespace: str, secret_ref: str, version_token: str) -> list[str]:
        """Propagate ``version_token`` to every dependent workload.

        Args:
            namespace: Namespace of the secret and its workloads.
            secret_ref: Name of the secret that changed.
            version_token: Version token of the freshly written secret.

        Returns:
            Names of the workloads that were patched.

        Raises:
            PatchConflict: if a workload keeps changing underneath us.
            StoreError: on workload store I/O failure.
        """
        patched = []
        for workload in self.find_dependents(namespace, secret_ref):
            if self._patch_with_retry(workload, secret_ref, version_token):
                patched.append(workload.name)

        if patched:
            logger.info(
                "Propagated secret %s/%s version %s to %d workload(s): %s",
                namespace, secret_ref, version_token, len(patched), ", ".join(patched),
            )
        else:
            logger.debug("No workload needed an update for secret %s/%s", namespace, secret_ref)
        return patched

    def _patch_with_retry(self, workload: Workload, secret_ref: str, version_token: str) -> bool:
        attempt = 0
        while True:
            if not upsert_env(workload, self.env_name, version_token):
                return False
            try:
                self.workloads.patch(workload)
                return True
            except NotFound:
                logger.info("Workload %s was deleted before it could be patched", workload.key)
                return False
            except PatchConflict:
                attempt += 1
                if attempt > self.conflict_retries:
                    raise
                logger.warning(
                    "Conflict patching workload %s, retrying against a fresh read (%d/%d)",
                    workload.key, attempt, self.conflict_retries,
                )
                fresh = self.workloads.get(workload.namespace, workload.name)
                if fresh is None or not fresh.mounts_secret(secret_ref):
                    return False
                workload = fresh
