"""JSON-file-backed stores for certificate requests, secrets and workloads.

Each store file holds a monotonically increasing ``resourceVersion``
counter and the stored objects keyed by ``namespace/name``. Every write
stamps the written object with the next counter value, which is the
version token callers use for optimistic concurrency.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Optional

from certmanager.exceptions import NotFound, PatchConflict, StoreError
from certmanager.models import (
    CertificateMaterial,
    CertificateRequest,
    EventKind,
    Workload,
)

logger = logging.getLogger(__name__)


def object_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


class JsonStore:
    """Shared persistence for the concrete stores."""

    kind = "object"

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    # ---- Persistence ----

    def _load(self) -> dict:
        if not self._path.exists():
            return {"resourceVersion": 0, "items": {}}
        try:
            data = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            raise StoreError(
                f"failed to read {self.kind} store {self._path}: {e}",
                details={"path": str(self._path)},
            ) from e
        data.setdefault("resourceVersion", 0)
        data.setdefault("items", {})
        return data

    def _save(self, data: dict) -> None:
        try:
            self._path.write_text(json.dumps(data, indent=2, default=str))
        except OSError as e:
            raise StoreError(
                f"failed to write {self.kind} store {self._path}: {e}",
                details={"path": str(self._path)},
            ) from e

    @staticmethod
    def _next_version(data: dict) -> str:
        data["resourceVersion"] = int(data["resourceVersion"]) + 1
        return str(data["resourceVersion"])


class RequestStore(JsonStore):
    """Certificate requests declared by users."""

    kind = "certificate"

    def get(self, namespace: str, name: str) -> Optional[CertificateRequest]:
        with self._lock:
            item = self._load()["items"].get(object_key(namespace, name))
        return CertificateRequest.from_dict(item) if item else None

    def list_all(self) -> list[CertificateRequest]:
        with self._lock:
            items = self._load()["items"]
        return [CertificateRequest.from_dict(v) for v in items.values()]

    def referencing_secret(self, namespace: str, secret_name: str) -> list[CertificateRequest]:
        """Requests in ``namespace`` whose secretRef is ``secret_name``."""
        return [
            r for r in self.list_all()
            if r.namespace == namespace and r.secret_ref == secret_name
        ]

    def apply(self, request: CertificateRequest) -> Optional[EventKind]:
        """Create or update the spec section of a request.

        Returns:
            CREATED for a new request, UPDATED when the spec changed,
            None when the stored spec is already identical.
        """
        with self._lock:
            data = self._load()
            key = request.key
            existing = data["items"].get(key)

            if existing is None:
                request.generation = 1
                request.resource_version = self._next_version(data)
                data["items"][key] = request.to_dict()
                self._save(data)
                logger.info("Created certificate %s", key)
                return EventKind.CREATED

            stored = CertificateRequest.from_dict(existing)
            if stored.spec_dict() == request.spec_dict():
                return None

            for attr in (
                "dns_name", "validity", "secret_ref",
                "purge_on_delete", "reload_on_change", "rotate_on_expiry",
            ):
                setattr(stored, attr, getattr(request, attr))
            stored.generation += 1
            stored.resource_version = self._next_version(data)
            data["items"][key] = stored.to_dict()
            self._save(data)
            logger.info("Updated certificate %s (generation %d)", key, stored.generation)
            return EventKind.UPDATED

    def mark_deleted(self, namespace: str, name: str) -> CertificateRequest:
        """Request deletion.

        A request holding the finalizer only gets ``deletion_requested``
        set; it disappears once the finalizer is cleared. A request
        without the finalizer is removed immediately.

        Raises:
            NotFound: if the request does not exist.
        """
        key = object_key(namespace, name)
        with self._lock:
            data = self._load()
            item = data["items"].get(key)
            if item is None:
                raise NotFound(f"certificate {key} not found")
            request = CertificateRequest.from_dict(item)
            request.deletion_requested = True
            if request.has_finalizer:
                request.resource_version = self._next_version(data)
                data["items"][key] = request.to_dict()
            else:
                del data["items"][key]
            self._save(data)
        return request

    def update_status(self, request: CertificateRequest) -> None:
        """Merge-patch the status of a stored request."""
        with self._lock:
            data = self._load()
            item = data["items"].get(request.key)
            if item is None:
                raise NotFound(f"certificate {request.key} not found")
            item["status"] = request.status.to_dict()
            item["metadata"]["resourceVersion"] = self._next_version(data)
            self._save(data)
        request.resource_version = item["metadata"]["resourceVersion"]

    def set_finalizer(self, request: CertificateRequest, present: bool) -> None:
        """Add or clear the finalizer.

        Clearing it on a deletion-requested request removes the request.
        """
        with self._lock:
            data = self._load()
            item = data["items"].get(request.key)
            if item is None:
                raise NotFound(f"certificate {request.key} not found")
            stored = CertificateRequest.from_dict(item)
            stored.has_finalizer = present
            if not present and stored.deletion_requested:
                del data["items"][request.key]
                logger.info("Certificate %s released for removal", request.key)
            else:
                stored.resource_version = self._next_version(data)
                data["items"][request.key] = stored.to_dict()
                request.resource_version = stored.resource_version
            self._save(data)
        request.has_finalizer = present

    def remove(self, namespace: str, name: str) -> bool:
        with self._lock:
            data = self._load()
            if data["items"].pop(object_key(namespace, name), None) is None:
                return False
            self._save(data)
            return True


class SecretStore(JsonStore):
    """TLS secrets holding issued certificate material."""

    kind = "secret"

    def get(self, namespace: str, name: str) -> Optional[CertificateMaterial]:
        with self._lock:
            item = self._load()["items"].get(object_key(namespace, name))
        return CertificateMaterial.from_dict(item) if item else None

    def create_or_update(
        self, namespace: str, name: str, material: CertificateMaterial
    ) -> CertificateMaterial:
        """Write material, replacing any stored secret wholesale.

        ``material.version_token`` must be empty to create and must equal
        the stored token to replace.

        Returns:
            The stored material carrying its new version token.

        Raises:
            PatchConflict: if the token does not match the stored one.
        """
        key = object_key(namespace, name)
        with self._lock:
            data = self._load()
            existing = data["items"].get(key)
            actual = str(existing["metadata"].get("resourceVersion", "")) if existing else ""
            if material.version_token != actual:
                raise PatchConflict("secret", key, material.version_token, actual)

            stored = CertificateMaterial(
                cert_pem=material.cert_pem,
                key_pem=material.key_pem,
                not_after=material.not_after,
                version_token=self._next_version(data),
                owner=material.owner,
                generation=material.generation,
            )
            data["items"][key] = stored.to_dict(namespace, name)
            self._save(data)
        logger.info("Stored secret %s (version %s)", key, stored.version_token)
        return stored

    def delete(self, namespace: str, name: str) -> None:
        """Delete a secret.

        Raises:
            NotFound: if the secret does not exist.
        """
        key = object_key(namespace, name)
        with self._lock:
            data = self._load()
            if key not in data["items"]:
                raise NotFound(f"secret {key} not found")
            del data["items"][key]
            self._save(data)
        logger.info("Deleted secret %s", key)


class WorkloadStore(JsonStore):
    """Deployment-like workloads that may mount certificate secrets."""

    kind = "workload"

    def list(self, namespace: str) -> list[Workload]:
        prefix = f"{namespace}/"
        with self._lock:
            items = self._load()["items"]
        return [
            Workload.from_dict(v) for k, v in items.items() if k.startswith(prefix)
        ]

    def get(self, namespace: str, name: str) -> Optional[Workload]:
        with self._lock:
            item = self._load()["items"].get(object_key(namespace, name))
        return Workload.from_dict(item) if item else None

    def apply(self, workload: Workload) -> Workload:
        """Create or replace a workload without a version check."""
        with self._lock:
            data = self._load()
            workload.resource_version = self._next_version(data)
            data["items"][workload.key] = workload.to_dict()
            self._save(data)
        return workload

    def patch(self, workload: Workload) -> Workload:
        """Write back a workload read earlier from this store.

        Raises:
            NotFound: if the workload was deleted meanwhile.
            PatchConflict: if it was modified since it was read.
        """
        with self._lock:
            data = self._load()
            existing = data["items"].get(workload.key)
            if existing is None:
                raise NotFound(f"workload {workload.key} not found")
            actual = str(existing["metadata"].get("resourceVersion", ""))
            if workload.resource_version != actual:
                raise PatchConflict("workload", workload.key, workload.resource_version, actual)
            workload.resource_version = self._next_version(data)
            data["items"][workload.key] = workload.to_dict()
            self._save(data)
        return workload
