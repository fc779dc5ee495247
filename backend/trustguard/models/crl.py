from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from trustguard.models.certificate import CertificateKind, format_serial


@dataclass
class RevocationEntry:
    serial: int
    revoked_at: datetime
    reason: Optional[str] = None
    subject: str = ""

    def to_dict(self) -> dict:
        return {
            "serial_number": format_serial(self.serial),
            "subject": self.subject,
            "revoked_at": self.revoked_at.isoformat(),
            "reason": self.reason or "unspecified",
        }


class ExpiryStatus(str, Enum):
    HEALTHY = "healthy"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    REVOKED = "revoked"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    INFO = "info"


@dataclass
class ExpiryFinding:
    name: str
    kind: CertificateKind
    serial: int
    not_after: datetime
    status: ExpiryStatus
    severity: Severity
    message: str

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "serial_number": format_serial(self.serial),
            "not_after": self.not_after.isoformat(),
            "status": self.status.value,
            "severity": self.severity.value,
            "message": self.message,
        }
