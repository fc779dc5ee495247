from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional


class CertificateKind(str, Enum):
    CA = "ca"
    SERVER = "server"
    CLIENT = "client"


class CertificateStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


# OpenSSL CA database status letters
_STATUS_CODES = {
    CertificateStatus.ACTIVE: "V",
    CertificateStatus.REVOKED: "R",
    CertificateStatus.EXPIRED: "E",
}
_CODE_STATUSES = {code: status for status, code in _STATUS_CODES.items()}


def format_serial(serial: int) -> str:
    """Upper-case hex padded to an even length, as OpenSSL writes serials."""
    text = f"{serial:X}"
    if len(text) % 2:
        text = "0" + text
    return text


def parse_serial(text: str) -> int:
    return int(text.strip(), 16)


def format_index_time(value: datetime) -> str:
    value = value.astimezone(timezone.utc)
    if value.year < 2050:
        return value.strftime("%y%m%d%H%M%SZ")
    return value.strftime("%Y%m%d%H%M%SZ")


def parse_index_time(text: str) -> datetime:
    if len(text) == 13:
        parsed = datetime.strptime(text, "%y%m%d%H%M%SZ")
        # UTCTime: 50-99 map to 19xx, strptime maps 00-68 to 20xx
        if parsed.year >= 2050:
            parsed = parsed.replace(year=parsed.year - 100)
    else:
        parsed = datetime.strptime(text, "%Y%m%d%H%M%SZ")
    return parsed.replace(tzinfo=timezone.utc)


@dataclass
class IndexEntry:
    """One line of the CA issuance index (``index.txt``)."""

    serial: int
    subject: str
    expires_at: datetime
    status: CertificateStatus = CertificateStatus.ACTIVE
    revoked_at: Optional[datetime] = None
    reason: Optional[str] = None
    filename: str = "unknown"

    @property
    def serial_hex(self) -> str:
        return format_serial(self.serial)

    def to_line(self) -> str:
        revocation = ""
        if self.revoked_at is not None:
            revocation = format_index_time(self.revoked_at)
            if self.reason:
                revocation += f",{self.reason}"
        return "\t".join(
            [
                _STATUS_CODES[self.status],
                format_index_time(self.expires_at),
                revocation,
                self.serial_hex,
                self.filename,
                self.subject,
            ]
        ) + "\n"

    @classmethod
    def from_line(cls, line: str) -> "IndexEntry":
        parts = line.rstrip("\n").split("\t")
        if len(parts) != 6:
            raise ValueError(f"Malformed index line: {line!r}")
        code, expires, revocation, serial, filename, subject = parts

        revoked_at = None
        reason = None
        if revocation:
            stamp, _, reason_text = revocation.partition(",")
            revoked_at = parse_index_time(stamp)
            reason = reason_text or None

        return cls(
            serial=parse_serial(serial),
            subject=subject,
            expires_at=parse_index_time(expires),
            status=_CODE_STATUSES[code],
            revoked_at=revoked_at,
            reason=reason,
            filename=filename,
        )


@dataclass
class CertificatePaths:
    key: Path
    cert: Path
    pem: Path

    def all(self) -> List[Path]:
        return [self.key, self.cert, self.pem]


@dataclass
class Certificate:
    """An issued identity certificate as found on disk."""

    name: str
    kind: CertificateKind
    serial: int
    subject_dn: str
    not_before: datetime
    not_after: datetime
    status: CertificateStatus = CertificateStatus.ACTIVE
    san: List[str] = field(default_factory=list)
    paths: Optional[CertificatePaths] = None

    @property
    def serial_hex(self) -> str:
        return format_serial(self.serial)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.not_after <= (now or datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "serial_number": self.serial_hex,
            "subject_dn": self.subject_dn,
            "san": list(self.san),
            "not_before": self.not_before.isoformat(),
            "not_after": self.not_after.isoformat(),
            "status": self.status.value,
            "cert_path": str(self.paths.cert) if self.paths else None,
        }
