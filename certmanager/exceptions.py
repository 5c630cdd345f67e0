"""Error taxonomy for certificate reconciliation.

Every error carries a machine-readable code, a human-readable message,
structured details (never key material) and a ``retryable`` flag the
host control loop uses to decide between backoff and giving up.
"""

from typing import Any, Optional


class CertManagerError(Exception):
    """Base exception for all certificate manager errors."""

    code = "CM_INTERNAL_ERROR"
    retryable = True

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class NotFound(CertManagerError):
    """Object is already gone."""

    code = "CM_NOT_FOUND"
    retryable = False


class ValidationError(CertManagerError):
    """Malformed certificate request (bad validity, empty DNS name...)."""

    code = "CM_VALIDATION_FAILED"
    retryable = False


class StoreError(CertManagerError):
    """Transient I/O failure on a backing store."""

    code = "CM_STORE_UNAVAILABLE"


class IssuanceError(CertManagerError):
    """Key or certificate generation failed."""

    code = "CM_ISSUANCE_FAILED"


class CertificateDecodeError(IssuanceError):
    """Stored certificate could not be decoded."""

    code = "CM_CERTIFICATE_DECODE_FAILED"
    retryable = False


class PatchConflict(CertManagerError):
    """Write carried a stale version token."""

    code = "CM_PATCH_CONFLICT"

    def __init__(self, kind: str, key: str, expected: str, actual: str):
        super().__init__(
            f"{kind} {key} was modified concurrently",
            details={"kind": kind, "key": key, "expected": expected, "actual": actual},
        )
