"""Capability links for read-only third-party review.

A review link carries a random bearer secret.  Only its HMAC-SHA256
(keyed by ``REVIEW_LINK_SECRET``) is stored, inside the owning record's
``review_shares``; the raw value is returned once at mint time and is
never logged or persisted.

Verification hashes the presented secret and asks the store for records
holding an unexpired grant with that hash.  Anything other than exactly
one match is denied with the same :class:`DisclosureDenied` error.
"""

import hashlib
import hmac
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from grant_intake.config import ReviewLinkSettings, review_link_secret
from grant_intake.errors import (
    ConfigurationError,
    DisclosureDenied,
    InvalidRecipients,
    RecordNotFound,
)
from grant_intake.helpers.time_utils import Clock, utc_now
from grant_intake.models.submission_models import ApplicationRecord, ReviewShare
from grant_intake.services.submission_store import SubmissionStore

logger = logging.getLogger(__name__)

TOKEN_BYTES = 24
MIN_TOKEN_LENGTH = 10
MAX_MESSAGE_CHARS = 2000

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_RECIPIENT_SEPARATORS = re.compile(r"[,\s]+")

SecretProvider = Callable[[], Optional[str]]


def create_review_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_review_token(token: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def parse_recipients(raw: str) -> list[str]:
    """Split a comma/whitespace separated list, de-duplicated in order.

    Raises:
        InvalidRecipients: no addresses, or any address fails the format check
    """
    recipients: list[str] = []
    for part in _RECIPIENT_SEPARATORS.split(raw or ""):
        part = part.strip()
        if part and part not in recipients:
            recipients.append(part)
    if not recipients:
        raise InvalidRecipients("Please provide at least one email.")
    bad = [r for r in recipients if not _EMAIL_PATTERN.match(r)]
    if bad:
        raise InvalidRecipients(f"Invalid emails: {', '.join(bad)}")
    return recipients


@dataclass(frozen=True)
class MintedShare:
    """Result of a mint. ``token`` is the only copy of the raw secret."""

    token: str
    review_url: str
    expires_at: datetime
    lifetime_days: float
    recipients: list[str]
    message: Optional[str]


@dataclass(frozen=True)
class VerifiedShare:
    record: ApplicationRecord
    expires_at: datetime


class ReviewShareService:
    def __init__(
        self,
        store: SubmissionStore,
        settings: ReviewLinkSettings,
        secret_provider: SecretProvider = review_link_secret,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings
        self.secret_provider = secret_provider
        self.clock = clock

    def _secret(self) -> str:
        secret = self.secret_provider()
        if not secret:
            logger.error("REVIEW_LINK_SECRET is not set; review links are disabled")
            raise ConfigurationError("Review links are not configured.")
        return secret

    def review_url(self, token: str) -> str:
        return f"{self.settings.base_url}/review/{token}"

    async def mint(
        self,
        submission_id: str,
        recipients: list[str],
        message: Optional[str] = None,
        lifetime_days: object = None,
    ) -> MintedShare:
        secret = self._secret()
        days = self.settings.clamp_days(lifetime_days)
        note = (message or "")[:MAX_MESSAGE_CHARS] or None

        token = create_review_token()
        now = self.clock()
        share = ReviewShare(
            token_hash=hash_review_token(token, secret),
            created_at=now,
            expires_at=now + timedelta(days=days),
            sent_to=list(recipients),
            message=note,
        )
        if not await self.store.append_share(submission_id, share, now):
            raise RecordNotFound()

        logger.info(
            "Minted review link for %s (%d recipient(s), %g day(s))",
            submission_id,
            len(recipients),
            days,
        )
        return MintedShare(
            token=token,
            review_url=self.review_url(token),
            expires_at=share.expires_at,
            lifetime_days=days,
            recipients=list(recipients),
            message=note,
        )

    async def verify(self, token: str) -> VerifiedShare:
        """Resolve a raw secret to its one record, or raise DisclosureDenied."""
        if not token or len(token) < MIN_TOKEN_LENGTH:
            raise DisclosureDenied()
        token_hash = hash_review_token(token, self._secret())
        now = self.clock()

        matches = await self.store.find_by_share(token_hash, now)
        if len(matches) != 1:
            if len(matches) > 1:
                logger.warning("Review token hash matched %d records", len(matches))
            raise DisclosureDenied()

        record = matches[0]
        live = [
            s.expires_at
            for s in record.review_shares
            if s.token_hash == token_hash and s.expires_at > now
        ]
        if not live:
            raise DisclosureDenied()
        return VerifiedShare(record=record, expires_at=max(live))
