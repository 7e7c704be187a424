"""Environment-driven configuration for the grant intake service.

All settings are plain environment variables (``.env`` is loaded via
python-dotenv) with conservative defaults, so the app can start with
nothing configured and fail only at the call sites that need a missing
collaborator.
"""

import logging
import math
import os
from dataclasses import dataclass, field
from typing import Mapping

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------
ENVIRONMENT = (_env("ENVIRONMENT", "development") or "development").lower()
IS_PRODUCTION = ENVIRONMENT == "production"

PUBLIC_BASE_URL = (_env("PUBLIC_BASE_URL", "http://localhost:8000") or "").rstrip("/")

# ---------------------------------------------------------------------------
# Allowed origins (CORS and the submission origin check)
# ---------------------------------------------------------------------------
# Production accepts HTTPS origins only; development adds localhost.
_DEFAULT_ORIGINS = (
    "https://bitcoinforthearts.org"
    if IS_PRODUCTION
    else "http://localhost:3000,http://localhost:5173"
)


def _allowed_origins(raw: str) -> list[str]:
    origins: list[str] = []
    for origin in raw.split(","):
        origin = origin.strip().rstrip("/")
        if not origin:
            continue
        if IS_PRODUCTION and not origin.startswith("https://"):
            logger.warning("Rejecting non-HTTPS origin in production: %s", origin)
            continue
        if IS_PRODUCTION and ("localhost" in origin or "127.0.0.1" in origin):
            logger.warning("Rejecting localhost origin in production: %s", origin)
            continue
        origins.append(origin)
    return origins


ALLOWED_ORIGINS = _allowed_origins(_env("ALLOWED_ORIGINS", _DEFAULT_ORIGINS) or "")
if PUBLIC_BASE_URL and PUBLIC_BASE_URL not in ALLOWED_ORIGINS:
    ALLOWED_ORIGINS.extend(_allowed_origins(PUBLIC_BASE_URL))

# ---------------------------------------------------------------------------
# Upload policy
# ---------------------------------------------------------------------------
PDF_MIME_TYPES = frozenset({"application/pdf"})

MAX_UPLOAD_FILE_MB = _env_int("MAX_UPLOAD_FILE_MB", 3)
MAX_UPLOAD_FILES = _env_int("MAX_UPLOAD_FILES", 10)
MAX_FORM_FIELDS = _env_int("MAX_FORM_FIELDS", 200)
MAX_FIELD_BYTES = _env_int("MAX_FIELD_BYTES", 1024 * 1024)

SUBMISSION_RATE_LIMIT = _env("SUBMISSION_RATE_LIMIT", "12/10 minutes")

# ---------------------------------------------------------------------------
# Review links
# ---------------------------------------------------------------------------
REVIEW_LINK_MIN_DAYS = _env_int("REVIEW_LINK_MIN_DAYS", 1)
REVIEW_LINK_MAX_DAYS = _env_int("REVIEW_LINK_MAX_DAYS", 30)
REVIEW_LINK_DEFAULT_DAYS = _env_int("REVIEW_LINK_DEFAULT_DAYS", 14)

# ---------------------------------------------------------------------------
# Certification
# ---------------------------------------------------------------------------
CERTIFICATION_POLICY_VERSION = _env_int("CERTIFICATION_POLICY_VERSION", 1)


@dataclass(frozen=True)
class IntakePolicy:
    """Upload limits enforced while a submission is still streaming in."""

    allowed_file_fields: Mapping[str, frozenset[str]] = field(
        default_factory=lambda: {
            "portfolioResume": PDF_MIME_TYPES,
            "fiscalSponsorAgreement": PDF_MIME_TYPES,
        }
    )
    max_file_bytes: int = 3 * 1024 * 1024
    max_files: int = 10
    max_fields: int = 200
    max_field_bytes: int = 1024 * 1024

    @property
    def max_file_mb(self) -> int:
        return max(1, self.max_file_bytes // (1024 * 1024))


@dataclass(frozen=True)
class ReviewLinkSettings:
    """Lifetime bounds and link construction for review shares."""

    min_days: int = 1
    max_days: int = 30
    default_days: int = 14
    base_url: str = "http://localhost:8000"

    def clamp_days(self, requested: object) -> float:
        """Clamp a requested lifetime into ``[min_days, max_days]``.

        Fractional days are kept. Infinity clamps to the bounds; NaN and
        non-numeric values fall back to ``default_days``.
        """
        try:
            days = float(requested) if requested is not None else float(self.default_days)
        except (TypeError, ValueError):
            days = float(self.default_days)
        if math.isnan(days):
            days = float(self.default_days)
        return max(float(self.min_days), min(float(self.max_days), days))


def load_intake_policy() -> IntakePolicy:
    return IntakePolicy(
        max_file_bytes=MAX_UPLOAD_FILE_MB * 1024 * 1024,
        max_files=MAX_UPLOAD_FILES,
        max_fields=MAX_FORM_FIELDS,
        max_field_bytes=MAX_FIELD_BYTES,
    )


def load_review_link_settings() -> ReviewLinkSettings:
    return ReviewLinkSettings(
        min_days=REVIEW_LINK_MIN_DAYS,
        max_days=REVIEW_LINK_MAX_DAYS,
        default_days=REVIEW_LINK_DEFAULT_DAYS,
        base_url=PUBLIC_BASE_URL,
    )


def review_link_secret() -> str | None:
    """HMAC key for review-token hashing; read per call so rotation needs no restart."""
    return _env("REVIEW_LINK_SECRET")
