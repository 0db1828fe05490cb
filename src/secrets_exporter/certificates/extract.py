"""
Secrets Exporter - Certificate Extraction

Decodes the first well-formed PEM block of a secret field and, when it holds
an X.509 certificate, returns its DNS subject alternative names and its
validity window using the ``cryptography`` library.

Most secret fields are not certificates at all (private keys, passwords,
tokens, config files), so every decode or parse failure yields ``None``
rather than an exception.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from datetime import datetime

from cryptography import x509

logger = logging.getLogger(__name__)

# Extensions are parsed lazily, so malformed ones surface on first access
_PARSE_ERRORS = (
    ValueError,
    TypeError,
    x509.DuplicateExtension,
    x509.UnsupportedGeneralNameType,
)

_PEM_BLOCK = re.compile(
    rb"-----BEGIN (?P<type>[^\r\n-]+)-----\r?\n(?P<body>.*?)-----END (?P=type)-----",
    re.DOTALL,
)


@dataclass(frozen=True)
class CertificateRecord:
    """Validity window and DNS names of a single certificate."""

    dns_names: tuple[str, ...]
    not_before: datetime
    not_after: datetime

    @property
    def host(self) -> str:
        """The DNS names joined with commas, as used for the ``host`` label."""
        return ",".join(self.dns_names)


def extract_certificate(payload: bytes | None) -> CertificateRecord | None:
    """
    Extract a certificate from a raw secret payload.

    Only the first well-formed PEM block of *payload* is considered,
    whatever its type; blocks with a malformed body are skipped.  The
    block must decode to DER that parses as an X.509 certificate.

    Args:
        payload: Raw bytes of a single secret field.

    Returns:
        A :class:`CertificateRecord` with UTC-aware timestamps, or
        ``None`` when the payload is not a PEM-encoded certificate.
    """
    if not payload:
        return None

    der = _first_pem_block(payload)
    if der is None:
        return None

    try:
        cert = x509.load_der_x509_certificate(der)
        dns_names = _dns_names(cert)
        return CertificateRecord(
            dns_names=dns_names,
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
        )
    except _PARSE_ERRORS as exc:
        logger.debug("PEM block is not an X.509 certificate: %s", exc)
        return None


# -------------------------------------------------------------------------
# Private helpers
# -------------------------------------------------------------------------


def _first_pem_block(payload: bytes) -> bytes | None:
    """Return the decoded body of the first well-formed PEM block, or None.

    A block whose body is not valid base64 is skipped and the search goes
    on with the next ``-----BEGIN`` line.
    """
    for match in _PEM_BLOCK.finditer(payload):
        # Encapsulated headers (e.g. "Proc-Type: 4,ENCRYPTED") precede the body
        lines = [
            line.strip()
            for line in match.group("body").splitlines()
            if line.strip() and b":" not in line
        ]
        try:
            return base64.b64decode(b"".join(lines), validate=True)
        except (binascii.Error, ValueError):
            logger.debug("skipping malformed %s PEM block", match.group("type"))
    return None


def _dns_names(cert: x509.Certificate) -> tuple[str, ...]:
    try:
        san_ext = cert.extensions.get_extension_for_class(
            x509.SubjectAlternativeName
        )
    except x509.ExtensionNotFound:
        return ()
    return tuple(san_ext.value.get_values_for_type(x509.DNSName))
