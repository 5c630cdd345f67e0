"""
Self-signed Certificate Manager.

Reconciles declared certificate requests into TLS secrets: issues
self-signed certificates, propagates new material to the workloads that
mount it, rotates on expiry and purges on deletion.
"""

from certmanager.issuance import IssuanceEngine, parse_validity
from certmanager.notifier import DependentWorkloadNotifier
from certmanager.reconciler import ReconciliationStateMachine
from certmanager.controller import Controller
from certmanager.models import (
    CertificateMaterial,
    CertificateRequest,
    EventKind,
    Phase,
    Requeue,
)

__all__ = [
    "IssuanceEngine", "parse_validity", "DependentWorkloadNotifier",
    "ReconciliationStateMachine", "Controller", "CertificateMaterial",
    "CertificateRequest", "EventKind", "Phase", "Requeue",
]
