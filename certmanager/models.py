"""Data model for certificate requests, issued material and workloads."""

import copy
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from certmanager.exceptions import ValidationError
from config.settings import FINALIZER

API_VERSION = "certs.k8c.io/v1"
KIND = "Certificate"

VALIDITY_PATTERN = re.compile(r"^([0-9]+)(s|m|h|d)$")

TLS_CERT_KEY = "tls.crt"
TLS_PRIVATE_KEY_KEY = "tls.key"


class Phase(str, Enum):
    """Status phase surfaced on a certificate request."""

    RECONCILING = "Reconciling"
    DEPLOYED = "Deployed"
    ROTATING = "Rotating"
    EXPIRED = "Expired"
    DELETING = "Deleting"


PHASE_MESSAGES = {
    Phase.RECONCILING: "Certificate is being processed",
    Phase.DEPLOYED: "Certificate deployed successfully",
    Phase.ROTATING: "Certificate is being regenerated",
    Phase.EXPIRED: "Certificate is expired",
    Phase.DELETING: "Certificate is being deleted",
}


class EventKind(str, Enum):
    """Why a reconcile invocation was delivered."""

    CREATED = "Created"
    UPDATED = "Updated"
    DELETED = "Deleted"
    RESYNCED = "Resynced"


@dataclass(frozen=True)
class Requeue:
    """Hint returned to the host scheduler.

    ``delay`` of None means the request has converged and needs no timed
    re-invocation.
    """

    delay: Optional[timedelta] = None

    @property
    def requeue(self) -> bool:
        return self.delay is not None


NO_REQUEUE = Requeue()


def requeue_after(delay: timedelta) -> Requeue:
    return Requeue(delay=delay)


def _fmt_dt(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _parse_dt(val) -> Optional[datetime]:
    if not val:
        return None
    return datetime.fromisoformat(val)


@dataclass
class CertificateStatus:
    """Engine-written observed state."""

    phase: str = ""
    message: str = ""
    deployed_namespace: str = ""
    expiry_timestamp: Optional[datetime] = None
    # spec generation the deployed material was issued for
    observed_generation: int = 0

    def to_dict(self) -> dict:
        return {
            "status": self.phase,
            "message": self.message,
            "deployedNamespace": self.deployed_namespace,
            "expiryDate": _fmt_dt(self.expiry_timestamp),
            "observedGeneration": self.observed_generation,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CertificateStatus":
        return cls(
            phase=data.get("status", ""),
            message=data.get("message", ""),
            deployed_namespace=data.get("deployedNamespace", ""),
            expiry_timestamp=_parse_dt(data.get("expiryDate")),
            observed_generation=int(data.get("observedGeneration", 0)),
        )


@dataclass
class CertificateRequest:
    """User-declared desired state for one certificate."""

    # Identity
    namespace: str
    name: str

    # Spec
    dns_name: str = ""
    validity: str = ""
    secret_ref: str = ""
    purge_on_delete: bool = False
    reload_on_change: bool = False
    rotate_on_expiry: bool = False

    # Lifecycle (set by the store / engine)
    deletion_requested: bool = False
    has_finalizer: bool = False
    status: CertificateStatus = field(default_factory=CertificateStatus)
    resource_version: str = ""
    generation: int = 0

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def spec_dict(self) -> dict:
        return {
            "dnsName": self.dns_name,
            "validity": self.validity,
            "secretRef": {"name": self.secret_ref},
            "purgeOnDelete": self.purge_on_delete,
            "reloadOnChange": self.reload_on_change,
            "rotateOnExpiry": self.rotate_on_expiry,
        }

    def validate(self) -> None:
        """Raise ValidationError if the request spec cannot be reconciled."""
        if not self.dns_name or not self.dns_name.strip():
            raise ValidationError(
                "dnsName must be a non-empty string",
                details={"certificate": self.key},
            )
        if not self.secret_ref:
            raise ValidationError(
                "secretRef.name is required",
                details={"certificate": self.key},
            )
        if not VALIDITY_PATTERN.match(self.validity or ""):
            raise ValidationError(
                f"invalid validity {self.validity!r}, expected <integer><s|m|h|d>",
                details={"certificate": self.key},
            )

    def to_dict(self) -> dict:
        """Serialize to the manifest layout used on disk and on the CLI."""
        metadata = {
            "name": self.name,
            "namespace": self.namespace,
            "resourceVersion": self.resource_version,
            "generation": self.generation,
            "finalizers": [FINALIZER] if self.has_finalizer else [],
        }
        if self.deletion_requested:
            metadata["deletionRequested"] = True
        return {
            "apiVersion": API_VERSION,
            "kind": KIND,
            "metadata": metadata,
            "spec": self.spec_dict(),
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CertificateRequest":
        """Deserialize from a manifest; unknown or missing fields fall back to defaults."""
        metadata = data.get("metadata") or {}
        spec = data.get("spec") or {}
        if not metadata.get("name"):
            raise ValidationError("metadata.name is required")

        return cls(
            namespace=metadata.get("namespace") or "default",
            name=metadata["name"],
            dns_name=spec.get("dnsName", ""),
            validity=spec.get("validity", ""),
            secret_ref=(spec.get("secretRef") or {}).get("name", ""),
            purge_on_delete=bool(spec.get("purgeOnDelete", False)),
            reload_on_change=bool(spec.get("reloadOnChange", False)),
            rotate_on_expiry=bool(spec.get("rotateOnExpiry", False)),
            deletion_requested=bool(metadata.get("deletionRequested", False)),
            has_finalizer=FINALIZER in (metadata.get("finalizers") or []),
            status=CertificateStatus.from_dict(data.get("status") or {}),
            resource_version=str(metadata.get("resourceVersion", "")),
            generation=int(metadata.get("generation", 0)),
        )

    from_manifest = from_dict


@dataclass
class CertificateMaterial:
    """Issued certificate/key pair plus expiry and version metadata.

    ``generation`` is the owning request's spec generation at issuance.
    """

    cert_pem: bytes
    key_pem: bytes
    not_after: datetime
    version_token: str = ""
    owner: str = ""
    generation: int = 0

    def to_dict(self, namespace: str, name: str) -> dict:
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "kubernetes.io/tls",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "resourceVersion": self.version_token,
                "owner": self.owner,
                "generation": self.generation,
            },
            "data": {
                TLS_CERT_KEY: self.cert_pem.decode("ascii"),
                TLS_PRIVATE_KEY_KEY: self.key_pem.decode("ascii"),
            },
            "notAfter": _fmt_dt(self.not_after),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CertificateMaterial":
        metadata = data.get("metadata") or {}
        payload = data.get("data") or {}
        return cls(
            cert_pem=payload.get(TLS_CERT_KEY, "").encode("ascii"),
            key_pem=payload.get(TLS_PRIVATE_KEY_KEY, "").encode("ascii"),
            not_after=_parse_dt(data.get("notAfter")),
            version_token=str(metadata.get("resourceVersion", "")),
            owner=metadata.get("owner", ""),
            generation=int(metadata.get("generation", 0)),
        )


@dataclass
class EnvVar:
    name: str
    value: str = ""


@dataclass
class Container:
    name: str
    env: list[EnvVar] = field(default_factory=list)


@dataclass
class Volume:
    name: str
    secret_name: Optional[str] = None


@dataclass
class Workload:
    """A deployment-like object whose pod template may mount secrets.

    The original manifest is kept so fields this project does not model
    (image, ports, resources...) survive a patch.
    """

    namespace: str
    name: str
    volumes: list[Volume] = field(default_factory=list)
    containers: list[Container] = field(default_factory=list)
    resource_version: str = ""
    manifest: dict = field(default_factory=dict, repr=False)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def mounts_secret(self, secret_name: str) -> bool:
        return any(v.secret_name == secret_name for v in self.volumes)

    def to_dict(self) -> dict:
        data = copy.deepcopy(self.manifest) if self.manifest else {}
        data.setdefault("apiVersion", "apps/v1")
        data.setdefault("kind", "Deployment")
        metadata = data.setdefault("metadata", {})
        metadata["name"] = self.name
        metadata["namespace"] = self.namespace
        metadata["resourceVersion"] = self.resource_version

        pod_spec = data.setdefault("spec", {}).setdefault("template", {}).setdefault("spec", {})
        raw_volumes = {v.get("name"): v for v in pod_spec.get("volumes", [])}
        volumes = []
        for v in self.volumes:
            entry = dict(raw_volumes.get(v.name, {}))
            entry["name"] = v.name
            if v.secret_name:
                entry["secret"] = dict(entry.get("secret") or {}, secretName=v.secret_name)
            volumes.append(entry)
        pod_spec["volumes"] = volumes

        raw_containers = {c.get("name"): c for c in pod_spec.get("containers", [])}
        containers = []
        for c in self.containers:
            entry = dict(raw_containers.get(c.name, {}))
            entry["name"] = c.name
            entry["env"] = [{"name": e.name, "value": e.value} for e in c.env]
            containers.append(entry)
        pod_spec["containers"] = containers
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Workload":
        metadata = data.get("metadata") or {}
        if not metadata.get("name"):
            raise ValidationError("metadata.name is required")
        pod_spec = ((data.get("spec") or {}).get("template") or {}).get("spec") or {}

        volumes = [
            Volume(
                name=v.get("name", ""),
                secret_name=(v.get("secret") or {}).get("secretName"),
            )
            for v in pod_spec.get("volumes", [])
        ]
        containers = [
            Container(
                name=c.get("name", ""),
                env=[EnvVar(e.get("name", ""), str(e.get("value", ""))) for e in c.get("env", [])],
            )
            for c in pod_spec.get("containers", [])
        ]
        return cls(
            namespace=metadata.get("namespace") or "default",
            name=metadata["name"],
            volumes=volumes,
            containers=containers,
            resource_version=str(metadata.get("resourceVersion", "")),
            manifest=copy.deepcopy(data),
        )
