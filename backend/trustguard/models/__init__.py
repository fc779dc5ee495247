from trustguard.models.ca import CAHealth, CAParameters, CertificateAuthority
from trustguard.models.certificate import (
    Certificate,
    CertificateKind,
    CertificatePaths,
    CertificateStatus,
    IndexEntry,
)
from trustguard.models.crl import ExpiryFinding, ExpiryStatus, RevocationEntry, Severity
from trustguard.models.reload import ApplyResult, ReloadState, Transition
from trustguard.models.snapshot import ConfigurationSnapshot

__all__ = [
    "CAHealth",
    "CAParameters",
    "CertificateAuthority",
    "Certificate",
    "CertificateKind",
    "CertificatePaths",
    "CertificateStatus",
    "IndexEntry",
    "ExpiryFinding",
    "ExpiryStatus",
    "RevocationEntry",
    "Severity",
    "ApplyResult",
    "ReloadState",
    "Transition",
    "ConfigurationSnapshot",
]
