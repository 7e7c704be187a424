"""GrantSubmission and ReviewShareGrant ORM models.

A submission row holds the write-once application groups as JSON
documents. Review grants are stored in a child table, one row per minted
link, appended and never updated; only the one-way hash of the link
secret is stored.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from grant_intake.models.db.base import Base, JSONDocument

__all__ = ["GrantSubmission", "ReviewShareGrant"]


class GrantSubmission(Base):
    __tablename__ = "grant_submissions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="submitted")

    # Write-once groups
    applicant: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    project: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    funding: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    background: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    oversight: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    certification: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    uploads: Mapped[list[dict[str, Any]]] = mapped_column(JSONDocument, nullable=False)
    links: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    meta: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)

    # Operator-mutable
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    awarded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Delivery outcomes
    email_notification: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONDocument, nullable=True
    )
    applicant_confirmation: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONDocument, nullable=True
    )

    review_shares: Mapped[list["ReviewShareGrant"]] = relationship(
        back_populates="submission",
        order_by="ReviewShareGrant.created_at",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('submitted','under_review','needs_info','awarded',"
            "'declined','withdrawn')",
            name="grant_submissions_status_check",
        ),
    )


class ReviewShareGrant(Base):
    __tablename__ = "review_shares"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    submission_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("grant_submissions.id", ondelete="CASCADE"),
        nullable=False,
    )
    token_hash: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_to: Mapped[list[str]] = mapped_column(JSONDocument, nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    submission: Mapped[GrantSubmission] = relationship(back_populates="review_shares")

    __table_args__ = (
        CheckConstraint("expires_at > created_at", name="review_shares_expiry_check"),
        Index("idx_review_shares_token_hash", "token_hash", unique=True),
        Index("idx_review_shares_submission", "submission_id"),
    )
