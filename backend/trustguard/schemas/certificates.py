from typing import List, Literal, Optional

from pydantic import BaseModel, Field

ROLE_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]*$"


class ServerIssueRequest(BaseModel):
    hostname: Optional[str] = Field(
        None, min_length=1, max_length=253, description="Server hostname (defaults to the configured one)"
    )
    alt_names: List[str] = Field(default_factory=list, description="Extra DNS names or IP addresses")
    key_size: Optional[int] = Field(None, ge=2048, le=8192)
    validity_days: Optional[int] = Field(None, ge=1, le=3650)


class ClientIssueRequest(BaseModel):
    role: str = Field(..., min_length=1, max_length=64, pattern=ROLE_PATTERN)
    key_size: Optional[int] = Field(None, ge=2048, le=8192)
    validity_days: Optional[int] = Field(None, ge=1, le=3650)


class CertificateRenewRequest(BaseModel):
    kind: Literal["server", "client"]
    role: Optional[str] = Field(None, min_length=1, max_length=64, pattern=ROLE_PATTERN)


class CertificateDetail(BaseModel):
    name: str
    kind: str
    serial_number: str
    subject_dn: str
    san: List[str]
    not_before: str
    not_after: str
    status: str
    cert_path: Optional[str]


class CertificateListResponse(BaseModel):
    certificates: List[CertificateDetail]
    total: int
