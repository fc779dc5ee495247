from typing import List, Optional

from pydantic import BaseModel, Field


class CAInitRequest(BaseModel):
    country: Optional[str] = Field(None, min_length=2, max_length=2, description="Two-letter country code")
    state: Optional[str] = Field(None, min_length=1)
    city: Optional[str] = Field(None, min_length=1)
    org: Optional[str] = Field(None, min_length=1)
    email: Optional[str] = Field(None, min_length=3)
    key_size: Optional[int] = Field(None, ge=2048, le=8192, description="RSA key size in bits")
    validity_days: Optional[int] = Field(None, ge=1, le=36500, description="CA validity in days")


class CAHealthDetail(BaseModel):
    healthy: bool
    subject_dn: str
    not_after: str
    key_digest: str
    warnings: List[str]
