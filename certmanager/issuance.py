"""Self-signed certificate issuance and expiry checks."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from certmanager.exceptions import CertificateDecodeError, IssuanceError, ValidationError
from certmanager.models import VALIDITY_PATTERN
from config.settings import DEFAULT_KEY_SIZE, MIN_KEY_SIZE

logger = logging.getLogger(__name__)

_UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_validity(text: str) -> timedelta:
    """Parse a validity string such as ``90d`` or ``12h``.

    Args:
        text: ``<integer><unit>`` where unit is one of s, m, h, d.

    Returns:
        The validity as a timedelta.

    Raises:
        ValidationError: if the text does not match the grammar.
    """
    match = VALIDITY_PATTERN.match(text or "")
    if not match:
        raise ValidationError(
            f"invalid validity {text!r}, expected <integer><s|m|h|d>",
            details={"validity": text},
        )
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _UNIT_SECONDS[unit])


@dataclass
class IssuedCertificate:
    """PEM-encoded certificate and key produced by the engine."""

    cert_pem: bytes
    key_pem: bytes
    not_before: datetime
    not_after: datetime


class IssuanceEngine:
    """Generates self-signed server certificates and inspects their expiry."""

    def __init__(
        self,
        key_size: int = DEFAULT_KEY_SIZE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if key_size < MIN_KEY_SIZE:
            raise ValueError(f"key_size must be at least {MIN_KEY_SIZE} bits")
        self.key_size = key_size
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    def generate_self_signed(self, dns_name: str, validity: timedelta) -> IssuedCertificate:
        """Generate an RSA key and a certificate signed by that same key.

        The subject common name and the only DNS subject-alternative-name
        are both ``dns_name``. The certificate is valid from now for
        ``validity`` and is usable for TLS server authentication.

        Args:
            dns_name: Hostname the certificate is issued for.
            validity: Lifetime of the certificate.

        Returns:
            IssuedCertificate with PEM bytes and the validity window.

        Raises:
            IssuanceError: if key generation or signing fails.
        """
        # x509 timestamps have second resolution
        not_before = self.now().replace(microsecond=0)
        not_after = not_before + validity

        try:
            private_key = rsa.generate_private_key(
                public_exponent=65537,
                key_size=self.key_size,
            )
            subject = issuer = x509.Name([
                x509.NameAttribute(NameOID.COMMON_NAME, dns_name),
            ])
            cert = (
                x509.CertificateBuilder()
                .subject_name(subject)
                .issuer_name(issuer)
                .public_key(private_key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(not_before)
                .not_valid_after(not_after)
                .add_extension(
                    x509.SubjectAlternativeName([x509.DNSName(dns_name)]),
                    critical=False,
                )
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=False,
                        key_encipherment=True,
                        data_encipherment=False,
                        key_agreement=False,
                        key_cert_sign=False,
                        crl_sign=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(
                    x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
                    critical=False,
                )
                .add_extension(
                    x509.BasicConstraints(ca=False, path_length=None),
                    critical=True,
                )
                .sign(private_key, hashes.SHA256())
            )
            cert_pem = cert.public_bytes(serialization.Encoding.PEM)
            key_pem = private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=serialization.NoEncryption(),
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise IssuanceError(
                f"failed to issue certificate for {dns_name}: {e}",
                details={"dns_name": dns_name},
            ) from e

        logger.info(
            "Issued self-signed certificate for %s (valid until %s)",
            dns_name, not_after.isoformat(),
        )
        return IssuedCertificate(
            cert_pem=cert_pem,
            key_pem=key_pem,
            not_before=not_before,
            not_after=not_after,
        )

    @staticmethod
    def load_certificate(cert_pem: bytes) -> x509.Certificate:
        """Decode a PEM certificate.

        Raises:
            CertificateDecodeError: on empty or malformed input.
        """
        if not cert_pem:
            raise CertificateDecodeError("stored certificate is empty")
        try:
            return x509.load_pem_x509_certificate(cert_pem)
        except ValueError as e:
            raise CertificateDecodeError(f"stored certificate could not be decoded: {e}") from e

    def not_after(self, cert_pem: bytes) -> datetime:
        return self.load_certificate(cert_pem).not_valid_after_utc

    def is_expired(self, cert_pem: bytes, now: Optional[datetime] = None) -> bool:
        """Return True once ``now`` is past the certificate's notAfter."""
        if now is None:
            now = self.now()
        elif now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now > self.not_after(cert_pem)
