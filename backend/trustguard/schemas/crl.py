from typing import List, Literal, Optional

from pydantic import BaseModel, Field

RevocationReason = Literal[
    "unspecified",
    "keyCompromise",
    "CACompromise",
    "affiliationChanged",
    "superseded",
    "cessationOfOperation",
    "certificateHold",
    "removeFromCRL",
]


class CertificateRevokeRequest(BaseModel):
    serial_number: str = Field(..., min_length=1, pattern=r"^[0-9A-Fa-f]+$", description="Hex serial")
    reason: Optional[RevocationReason] = None
    publish: bool = Field(True, description="Regenerate the CRL right after revoking")


class RevocationRecord(BaseModel):
    serial_number: str
    subject: str
    revoked_at: str
    reason: str


class CRLRevocationsResponse(BaseModel):
    revocations: List[RevocationRecord]
    total: int
