from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class MessageHeader(BaseModel):
    timestamp: Optional[str] = None
    bank_id: str = Field(min_length=1, max_length=64)
    transaction_id: str = Field(min_length=1, max_length=128)


class ComplianceWarranty(BaseModel):
    kyc_status: str = Field(min_length=1)
    screening_status: str = "CLEAR"
    warranty_token: str = Field(min_length=1)


class OnboardRequest(BaseModel):
    header: MessageHeader
    investor_profile: Dict[str, Any]
    compliance_warranty: ComplianceWarranty
    fund_id: Optional[str] = None


class RevokeRequest(BaseModel):
    token: str = Field(min_length=1)


class ReconstructRequest(BaseModel):
    shard_b: str


class ResetRequest(BaseModel):
    actor: Optional[str] = None
