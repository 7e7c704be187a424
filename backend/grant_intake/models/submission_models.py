"""Pydantic schemas for the grant application record and its nested groups."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class ApplicationStatus(str, Enum):
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    NEEDS_INFO = "needs_info"
    AWARDED = "awarded"
    DECLINED = "declined"
    WITHDRAWN = "withdrawn"


class UploadRef(BaseModel):
    """Reference to one blob accepted into storage for a submission."""

    file_id: str
    field_name: str
    filename: str
    mime_type: str
    size: int = 0


class ApplicantInfo(BaseModel):
    legal_name: str
    email: str
    phone: Optional[str] = None
    mailing_address: str
    links: str
    applicant_type: str
    nonprofit_or_sponsor: Optional[str] = None
    ein: Optional[str] = None
    disciplines: List[str] = Field(default_factory=list)
    btc_address: str
    mission_aligned: bool = True
    eligible_jurisdiction: bool = True


class ProjectInfo(BaseModel):
    title: str
    summary: str
    description: str
    timeline: str
    venue_platform: str
    impact: str


class FundingRequest(BaseModel):
    requested_amount: float
    budget_breakdown: str
    fund_use: str


class BackgroundInfo(BaseModel):
    bio: str
    accomplishments: str
    equity_inclusion: str
    evaluation_plan: str


class OversightInfo(BaseModel):
    reporting_plan: str
    agree_oversight: bool = True
    report_due_at: Optional[datetime] = None
    report_received_at: Optional[datetime] = None


class SignatureCapture(BaseModel):
    """Legal signature captured at certification time."""

    name: str
    signed_at: datetime
    policy_version: int


class Certification(BaseModel):
    agree_terms: bool = True
    agree_legal_assurances: bool = True
    signature: SignatureCapture


class SupplementalLinks(BaseModel):
    fiscal_sponsor_agreement: Optional[str] = None
    art_samples: Optional[str] = None


class DeliveryOutcome(BaseModel):
    """Best-effort notification result; observability only."""

    ok: bool
    failed_at: Optional[datetime] = None
    error: Optional[str] = None


class ClientMeta(BaseModel):
    ip: Optional[str] = None
    user_agent: Optional[str] = None


class ReviewShare(BaseModel):
    """One minted review link. Only the hash of the secret is kept."""

    token_hash: str
    created_at: datetime
    expires_at: datetime
    sent_to: List[str] = Field(default_factory=list)
    message: Optional[str] = None

    @model_validator(mode="after")
    def _expiry_after_creation(self) -> "ReviewShare":
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be after created_at")
        return self


class ApplicationRecord(BaseModel):
    """The persisted grant application document."""

    id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    status: ApplicationStatus = ApplicationStatus.SUBMITTED
    applicant: ApplicantInfo
    project: ProjectInfo
    funding: FundingRequest
    background: BackgroundInfo
    oversight: OversightInfo
    certification: Certification
    uploads: List[UploadRef] = Field(default_factory=list)
    links: SupplementalLinks = Field(default_factory=SupplementalLinks)
    admin_notes: Optional[str] = None
    awarded_at: Optional[datetime] = None
    review_shares: List[ReviewShare] = Field(default_factory=list)
    email_notification: Optional[DeliveryOutcome] = None
    applicant_confirmation: Optional[DeliveryOutcome] = None
    meta: ClientMeta = Field(default_factory=ClientMeta)

    def find_upload(self, file_id: str) -> Optional[UploadRef]:
        return next((u for u in self.uploads if u.file_id == file_id), None)


class SubmissionAccepted(BaseModel):
    """Response returned after a successful intake."""

    ok: bool = True
    application_id: str


class IntakeConfigStatus(BaseModel):
    """Which collaborators are configured; never includes secrets."""

    ok: bool = True
    configured: dict[str, bool]
    environment: str


class AdminPatch(BaseModel):
    """Operator-editable fields. Everything else is write-once at intake."""

    status: Optional[ApplicationStatus] = None
    admin_notes: Optional[str] = Field(None, alias="adminNotes")
    report_received: Optional[bool] = Field(None, alias="reportReceived")
    awarded_at: Optional[datetime] = Field(None, alias="awardedAt")
    report_due_at: Optional[datetime] = Field(None, alias="reportDueAt")

    class Config:
        populate_by_name = True
