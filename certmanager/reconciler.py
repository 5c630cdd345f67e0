"""Reconciliation state machine for certificate requests.

One invocation loads a single request and converges it:

    Reconciling -> Deployed | Rotating -> Deployed | Expired | Deleting

Every branch issues at most one certificate. Rotation timing is handed
back to the caller as a Requeue hint; nothing here keeps timers.
"""

import logging
from datetime import timedelta
from typing import Optional

from certmanager.audit import AuditAction
from certmanager.exceptions import (
    CertificateDecodeError,
    NotFound,
    PatchConflict,
    ValidationError,
)
from certmanager.issuance import IssuanceEngine, parse_validity
from certmanager.models import (
    NO_REQUEUE,
    PHASE_MESSAGES,
    CertificateMaterial,
    CertificateRequest,
    EventKind,
    Phase,
    Requeue,
    requeue_after,
)
from config.settings import CONFLICT_RETRIES

logger = logging.getLogger(__name__)

ROTATING_MESSAGES = {
    "spec changed": "Certificate spec changed, Regenerating..",
    "certificate expired": "Certificate is expired, Regenerating..",
}


class ReconciliationStateMachine:
    """Decides and performs issue / rotate / propagate / purge per request.

    Args:
        requests: Store of certificate requests (status and finalizer writes).
        secrets: Store holding the issued certificate material.
        notifier: DependentWorkloadNotifier used when reloadOnChange is set.
        engine: IssuanceEngine; its clock is the notion of "now".
        audit: Optional AuditLog recording every action taken.
        conflict_retries: Attempts against a fresh read after a secret
            write conflict.
    """

    def __init__(
        self,
        requests,
        secrets,
        notifier,
        engine: Optional[IssuanceEngine] = None,
        audit=None,
        conflict_retries: int = CONFLICT_RETRIES,
    ):
        self.requests = requests
        self.secrets = secrets
        self.notifier = notifier
        self.engine = engine or IssuanceEngine()
        self.audit = audit
        self.conflict_retries = conflict_retries

    def reconcile(
        self, namespace: str, name: str, event: EventKind = EventKind.RESYNCED
    ) -> Requeue:
        """Converge one certificate request.

        Args:
            namespace: Namespace of the request.
            name: Name of the request.
            event: Why this invocation happened. Only UPDATED counts as a
                spec change, and only while the stored material was issued
                for an older generation; it then forces a re-issue.

        Returns:
            NO_REQUEUE, or a requeue after the validity period when
            rotateOnExpiry is enabled.

        Raises:
            ValidationError, CertificateDecodeError: not retryable; the
                message is also written to the request status.
            StoreError, IssuanceError, PatchConflict: retryable.
        """
        request = self.requests.get(namespace, name)
        if request is None:
            logger.info(
                "Certificate %s/%s not found, ignoring since it must be deleted",
                namespace, name,
            )
            return NO_REQUEUE

        logger.debug("Reconciling certificate %s (event=%s)", request.key, event.value)
        self._set_status(request, Phase.RECONCILING)

        if request.deletion_requested:
            return self._reconcile_delete(request)

        try:
            request.validate()
            validity = parse_validity(request.validity)
            material = self.secrets.get(request.namespace, request.secret_ref)
            if material is None:
                return self._issue(request, validity)
            return self._reconcile_existing(request, material, validity, event)
        except (ValidationError, CertificateDecodeError) as e:
            logger.error("Certificate %s cannot be reconciled: %s", request.key, e)
            request.status.message = e.message
            self.requests.update_status(request)
            raise

    # ---- Branches ----

    def _reconcile_delete(self, request: CertificateRequest) -> Requeue:
        logger.info("Deletion requested for certificate %s", request.key)

        if not request.purge_on_delete:
            logger.info(
                "purgeOnDelete is disabled, leaving secret %s/%s in place",
                request.namespace, request.secret_ref,
            )
            if request.has_finalizer:
                self._clear_finalizer(request)
            return NO_REQUEUE

        self._set_status(request, Phase.DELETING)
        material = self.secrets.get(request.namespace, request.secret_ref)
        if material is not None and material.owner and material.owner != request.key:
            logger.warning(
                "Secret %s/%s is owned by %s, not purging it for %s",
                request.namespace, request.secret_ref, material.owner, request.key,
            )
        elif material is not None:
            try:
                self.secrets.delete(request.namespace, request.secret_ref)
                self._audit(AuditAction.CERTIFICATE_PURGE, request, f"secret {request.secret_ref}")
            except NotFound:
                logger.info("Secret %s/%s already deleted", request.namespace, request.secret_ref)

        self._clear_finalizer(request)
        return NO_REQUEUE

    def _reconcile_existing(
        self,
        request: CertificateRequest,
        material: CertificateMaterial,
        validity: timedelta,
        event: EventKind,
    ) -> Requeue:
        expired = self.engine.is_expired(material.cert_pem)
        # a retried Updated event must not rotate material already issued for it
        changed = event is EventKind.UPDATED and material.generation != request.generation
        self._ensure_finalizer(request)

        if not expired and not changed:
            if request.reload_on_change:
                self._propagate(request, material.version_token)
            self._set_status(
                request, Phase.DEPLOYED,
                expiry=self.engine.not_after(material.cert_pem),
                generation=material.generation,
            )
            return self._requeue(request, validity)

        if changed or request.rotate_on_expiry:
            reason = "spec changed" if changed else "certificate expired"
            logger.info("Rotating certificate %s: %s", request.key, reason)
            self._set_status(request, Phase.ROTATING, message=ROTATING_MESSAGES[reason])
            return self._issue(request, validity, previous=material)

        logger.warning(
            "Certificate %s expired and rotateOnExpiry is disabled", request.key,
        )
        self._set_status(
            request, Phase.EXPIRED,
            expiry=self.engine.not_after(material.cert_pem),
        )
        self._audit(AuditAction.CERTIFICATE_EXPIRED, request, "rotation disabled")
        return NO_REQUEUE

    def _issue(
        self,
        request: CertificateRequest,
        validity: timedelta,
        previous: Optional[CertificateMaterial] = None,
    ) -> Requeue:
        issued = self.engine.generate_self_signed(request.dns_name, validity)
        material = CertificateMaterial(
            cert_pem=issued.cert_pem,
            key_pem=issued.key_pem,
            not_after=issued.not_after,
            version_token=previous.version_token if previous else "",
            owner=request.key,
            generation=request.generation,
        )
        stored = self._persist(request, material)

        if previous is None:
            self._audit(AuditAction.CERTIFICATE_ISSUE, request, f"secret {request.secret_ref}")
        else:
            self._audit(AuditAction.CERTIFICATE_ROTATE, request, f"secret {request.secret_ref}")

        self._ensure_finalizer(request)

        if request.reload_on_change:
            self._propagate(request, stored.version_token)

        self._set_status(
            request, Phase.DEPLOYED, expiry=stored.not_after, generation=stored.generation,
        )
        return self._requeue(request, validity)

    # ---- Helpers ----

    def _persist(
        self, request: CertificateRequest, material: CertificateMaterial
    ) -> CertificateMaterial:
        """Write material, retrying version conflicts against a fresh read."""
        attempt = 0
        while True:
            try:
                return self.secrets.create_or_update(
                    request.namespace, request.secret_ref, material,
                )
            except PatchConflict:
                attempt += 1
                if attempt > self.conflict_retries:
                    raise
                logger.warning(
                    "Conflict writing secret %s/%s, retrying against a fresh read (%d/%d)",
                    request.namespace, request.secret_ref, attempt, self.conflict_retries,
                )
                fresh = self.secrets.get(request.namespace, request.secret_ref)
                material.version_token = fresh.version_token if fresh else ""

    def _propagate(self, request: CertificateRequest, version_token: str) -> None:
        patched = self.notifier.notify(request.namespace, request.secret_ref, version_token)
        if patched:
            self._audit(AuditAction.WORKLOAD_RELOAD, request, ", ".join(patched))

    def _ensure_finalizer(self, request: CertificateRequest) -> None:
        if request.purge_on_delete and not request.has_finalizer:
            self.requests.set_finalizer(request, True)
            logger.info("Added finalizer to certificate %s", request.key)

    def _clear_finalizer(self, request: CertificateRequest) -> None:
        try:
            self.requests.set_finalizer(request, False)
        except NotFound:
            return
        self._audit(AuditAction.FINALIZER_CLEAR, request, "")
        logger.info("Removed finalizer from certificate %s", request.key)

    def _set_status(
        self,
        request: CertificateRequest,
        phase: Phase,
        expiry=None,
        generation: Optional[int] = None,
        message: Optional[str] = None,
    ) -> None:
        request.status.phase = phase.value
        request.status.message = message or PHASE_MESSAGES[phase]
        if phase is Phase.DEPLOYED:
            request.status.deployed_namespace = request.namespace
        if generation is not None:
            request.status.observed_generation = generation
        if expiry is not None:
            request.status.expiry_timestamp = expiry
        self.requests.update_status(request)

    @staticmethod
    def _requeue(request: CertificateRequest, validity: timedelta) -> Requeue:
        if request.rotate_on_expiry:
            return requeue_after(validity)
        return NO_REQUEUE

    def _audit(self, action: AuditAction, request: CertificateRequest, detail: str) -> None:
        if self.audit is not None:
            self.audit.log(action, request.key, detail)
