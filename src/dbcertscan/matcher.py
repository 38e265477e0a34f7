"""Find the certificate a thumbprint refers to in a host's certificate store."""
from __future__ import annotations

import logging
import re
from datetime import UTC, datetime

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from .models import CertificateRecord
from .providers.base import CertificateStore

LOGGER = logging.getLogger(__name__)

THUMBPRINT_LENGTH = 40
_THUMBPRINT_RE = re.compile(rf"^[0-9A-F]{{{THUMBPRINT_LENGTH}}}$")
# Direction and byte-order marks picked up when copying from certlm.msc.
_INVISIBLE = frozenset({"\u200e", "\u200f", "\ufeff"})


def normalize_thumbprint(value: str | None) -> str | None:
    """Return *value* as upper-case hex, or ``None`` when it is not a thumbprint.

    Thumbprints copied out of the certificate manager UI often carry spaces
    and an invisible left-to-right mark; both are dropped.
    """
    if not value:
        return None
    cleaned = "".join(
        char for char in value if not char.isspace() and char not in _INVISIBLE
    ).upper()
    if not _THUMBPRINT_RE.match(cleaned):
        return None
    return cleaned


def thumbprint_of(certificate: x509.Certificate) -> str:
    """Return the SHA-1 thumbprint of *certificate* as upper-case hex."""
    return certificate.fingerprint(hashes.SHA1()).hex().upper()  # noqa: S303


def record_from_certificate(
    certificate: x509.Certificate,
    friendly_name: str | None = None,
) -> CertificateRecord:
    """Build a :class:`CertificateRecord` describing *certificate*."""
    return CertificateRecord(
        thumbprint=thumbprint_of(certificate),
        friendly_name=friendly_name or None,
        dns_names=_dns_names(certificate),
        not_before=_as_utc(certificate.not_valid_before_utc),
        not_after=_as_utc(certificate.not_valid_after_utc),
        issued_to=certificate.subject.rfc4514_string(),
        issued_by=certificate.issuer.rfc4514_string(),
        handle=certificate,
    )


def _dns_names(certificate: x509.Certificate) -> tuple[str, ...]:
    try:
        extension = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return ()
    except ValueError as exc:  # malformed extension data
        LOGGER.debug("Ignoring unreadable SAN extension: %s", exc)
        return ()
    return tuple(extension.value.get_values_for_type(x509.DNSName))


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


class CertificateMatcher:
    """Search every container of a :class:`CertificateStore` for a thumbprint."""

    def __init__(self, store: CertificateStore) -> None:
        """Bind the matcher to a host-local *store*."""
        self._store = store

    def match(self, identifier: str | None) -> CertificateRecord | None:
        """Return the record whose thumbprint equals *identifier*, if any.

        Containers that cannot be read are skipped so a match elsewhere in the
        store is still found. A failure to list the containers at all is not
        swallowed.
        """
        wanted = normalize_thumbprint(identifier)
        if wanted is None:
            return None

        for container in self._store.containers():
            try:
                for certificate, friendly_name in self._store.certificates(container):
                    if thumbprint_of(certificate) == wanted:
                        return record_from_certificate(certificate, friendly_name)
            except Exception as exc:  # noqa: BLE001 - unreadable containers are skipped
                LOGGER.debug("Skipping certificate container %s: %s", container, exc)
        return None


__all__ = [
    "THUMBPRINT_LENGTH",
    "CertificateMatcher",
    "normalize_thumbprint",
    "record_from_certificate",
    "thumbprint_of",
]
