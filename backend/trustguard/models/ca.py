from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List

from trustguard.models.certificate import format_serial


@dataclass
class CAParameters:
    country: str
    state: str
    city: str
    org: str
    email: str
    key_size: int = 2048
    validity_days: int = 3650
    common_name: str = "MongoDB CA"

    def __post_init__(self):
        if self.key_size < 2048:
            raise ValueError("CA key size must be at least 2048 bits")
        if self.validity_days < 1:
            raise ValueError("CA validity must be at least one day")
        if len(self.country) != 2:
            raise ValueError("Country must be a two-letter code")

    def subject(self) -> Dict[str, str]:
        return {
            "C": self.country,
            "ST": self.state,
            "L": self.city,
            "O": self.org,
            "CN": self.common_name,
            "emailAddress": self.email,
        }


@dataclass
class CertificateAuthority:
    subject_dn: str
    not_before: datetime
    not_after: datetime
    key_digest: str
    next_serial: int
    issued: int

    def to_dict(self) -> dict:
        return {
            "subject_dn": self.subject_dn,
            "not_before": self.not_before.isoformat(),
            "not_after": self.not_after.isoformat(),
            "key_digest": self.key_digest,
            "next_serial": format_serial(self.next_serial),
            "issued": self.issued,
        }


@dataclass
class CAHealth:
    subject_dn: str
    not_after: datetime
    key_digest: str
    warnings: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return True

    def to_dict(self) -> dict:
        return {
            "healthy": self.healthy,
            "subject_dn": self.subject_dn,
            "not_after": self.not_after.isoformat(),
            "key_digest": self.key_digest,
            "warnings": list(self.warnings),
        }
