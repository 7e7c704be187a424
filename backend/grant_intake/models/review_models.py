"""Pydantic schemas for review-link minting and the read-only review view."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from grant_intake.models.submission_models import (
    BackgroundInfo,
    FundingRequest,
    ProjectInfo,
)


class ShareRequest(BaseModel):
    """Operator request to mint a review link."""

    emails: str = Field(..., description="Comma or whitespace separated recipients")
    message: Optional[str] = None
    expires_days: Optional[float] = Field(None, alias="expiresDays")

    class Config:
        populate_by_name = True


class ShareResponse(BaseModel):
    ok: bool = True
    review_url: str
    expires_at: datetime
    email_sent: bool


class ReviewApplicant(BaseModel):
    legal_name: str
    email: str
    links: str
    applicant_type: str
    ein: Optional[str] = None
    disciplines: List[str] = Field(default_factory=list)
    btc_address: str


class ReviewFile(BaseModel):
    file_id: str
    field_name: str
    filename: str
    size: int
    download_path: str


class ReviewView(BaseModel):
    """Read-only projection of an application for third-party reviewers.

    Operator-only data (notes, share grants, client metadata, delivery
    outcomes, phone and mailing address) is never part of this view.
    """

    id: str
    submitted_at: datetime
    status: str
    applicant: ReviewApplicant
    project: ProjectInfo
    funding: FundingRequest
    background: BackgroundInfo
    reporting_plan: str
    fiscal_sponsor_agreement_link: Optional[str] = None
    art_samples_links: Optional[str] = None
    files: List[ReviewFile] = Field(default_factory=list)
    expires_at: datetime
