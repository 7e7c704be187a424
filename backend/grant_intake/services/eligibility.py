"""Eligibility and validation rules for grant submissions.

Pure functions over the parsed form: no I/O, no clock, no storage.  Rules
run in a fixed order and the first violation short-circuits with a
:class:`ValidationFailure` naming exactly one offending field, so every
user-facing error is actionable.

Order:
    1. unconditionally required scalar fields
    2. at least one discipline
    3. disbursement address format (injected predicate)
    4. organization-only block (sponsor status, EIN, sponsor proof)
    5. required affirmations (checkbox equivalents)
    6. legal signature name
    7. narrative length caps
    8. requested amount is a non-negative number
"""

import math
import re
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Sequence

from grant_intake.errors import ValidationFailure

AddressPredicate = Callable[[str], bool]

APPLICANT_INDIVIDUAL = "individual"
APPLICANT_ORGANIZATION = "organization"
APPLICANT_TYPES = (APPLICANT_INDIVIDUAL, APPLICANT_ORGANIZATION)

SPONSOR_FILE_FIELD = "fiscalSponsorAgreement"
SPONSOR_LINK_FIELD = "fiscalSponsorAgreementLink"
EIN_DIGITS = 9

# (form field, label) in the order they are checked
REQUIRED_FIELDS: tuple[tuple[str, str], ...] = (
    ("applicantType", "Applicant Type"),
    ("legalName", "Legal Name or DBA"),
    ("email", "Email"),
    ("mailingAddress", "Mailing Address"),
    ("links", "Links"),
    ("btcAddress", "Bitcoin Address"),
    ("projectTitle", "Project Title"),
    ("projectSummary", "Project Summary"),
    ("projectDescription", "Detailed Description"),
    ("timeline", "Timeline"),
    ("venuePlatform", "Venue/Platform"),
    ("impact", "Impact"),
    ("requestedAmount", "Requested Grant Amount"),
    ("budgetBreakdown", "Budget Breakdown"),
    ("fundUse", "How BFTA Funds Will Be Used"),
    ("bio", "Mission Statement or Bio"),
    ("accomplishments", "History and Key Accomplishments"),
    ("equityInclusion", "Equity and Inclusion Statement"),
    ("evaluationPlan", "Evaluation Plan"),
    ("reportingPlan", "Post-Grant Reporting Plan"),
)

REQUIRED_AFFIRMATIONS: tuple[tuple[str, str], ...] = (
    ("missionAligned", "Mission alignment"),
    ("eligibleJurisdiction", "Eligibility jurisdiction"),
    ("agreeOversight", "Oversight agreement"),
    ("agreeTerms", "Terms agreement"),
    ("agreeLegalAssurances", "Legal assurances agreement"),
)

# (form field, label, max characters)
LENGTH_CAPS: tuple[tuple[str, str, int], ...] = (
    ("projectSummary", "Project Summary", 500),
    ("projectDescription", "Detailed Description", 2000),
    ("impact", "Impact", 1500),
    ("fundUse", "How BFTA Funds Will Be Used", 1500),
    ("bio", "Bio", 1500),
    ("accomplishments", "Accomplishments", 2000),
    ("equityInclusion", "Equity and Inclusion", 1500),
    ("evaluationPlan", "Evaluation Plan", 1500),
    ("reportingPlan", "Reporting Plan", 1500),
)

_TRUE_VALUES = {"on", "true", "1", "yes", "y"}
_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class SubmissionInput:
    """Everything validation needs from a fully drained request."""

    fields: Mapping[str, str]
    disciplines: Sequence[str] = ()
    uploaded_fields: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class EligibleSubmission:
    """Normalized values produced by a passing validation run."""

    fields: Mapping[str, str]
    applicant_type: str
    disciplines: tuple[str, ...]
    requested_amount: float
    ein: Optional[str]
    signature_name: str

    @property
    def is_organization(self) -> bool:
        return self.applicant_type == APPLICANT_ORGANIZATION

    def text(self, name: str) -> str:
        return (self.fields.get(name) or "").strip()

    def optional_text(self, name: str) -> Optional[str]:
        return self.text(name) or None


def _value(fields: Mapping[str, str], key: str) -> str:
    return (fields.get(key) or "").strip()


def require_text(fields: Mapping[str, str], key: str, label: str) -> str:
    value = _value(fields, key)
    if not value:
        raise ValidationFailure(f"Missing required field: {label}.", field=key)
    return value


def require_affirmation(fields: Mapping[str, str], key: str, label: str) -> None:
    if _value(fields, key).lower() not in _TRUE_VALUES:
        raise ValidationFailure(f"Missing required checkbox: {label}.", field=key)


def normalize_ein(raw: str) -> Optional[str]:
    """Return ``NN-NNNNNNN`` for exactly nine digits, else ``None``."""
    digits = _NON_DIGITS.sub("", raw or "")
    if len(digits) != EIN_DIGITS:
        return None
    return f"{digits[:2]}-{digits[2:]}"


def parse_amount(value: str, label: str, key: str) -> float:
    try:
        amount = float(value.replace(",", "").lstrip("$"))
    except ValueError:
        raise ValidationFailure(f"Invalid number for {label}.", field=key) from None
    if not math.isfinite(amount) or amount < 0:
        raise ValidationFailure(f"Invalid number for {label}.", field=key)
    return amount


def has_sponsor_proof(fields: Mapping[str, str], uploaded_fields: frozenset[str]) -> bool:
    """Either an uploaded sponsor agreement or a non-empty sponsor link."""
    if SPONSOR_FILE_FIELD in uploaded_fields:
        return True
    if _value(fields, SPONSOR_LINK_FIELD):
        return True
    return False


def _validate_organization(
    fields: Mapping[str, str], uploaded_fields: frozenset[str]
) -> str:
    require_text(fields, "nonprofitOrSponsor", "Nonprofit Status or Fiscal Sponsor")
    ein = normalize_ein(_value(fields, "ein"))
    if ein is None:
        raise ValidationFailure(
            f"EIN must contain exactly {EIN_DIGITS} digits.", field="ein"
        )
    if not has_sponsor_proof(fields, uploaded_fields):
        raise ValidationFailure(
            "Fiscal Sponsor Agreement is required for organizations "
            "(upload a PDF, or provide a link).",
            field=SPONSOR_FILE_FIELD,
        )
    return ein


def validate_submission(
    submission: SubmissionInput,
    is_valid_address: AddressPredicate,
) -> EligibleSubmission:
    """Run every rule in order; raise on the first violation."""
    fields = submission.fields

    # 1. Unconditionally required scalar fields
    for key, label in REQUIRED_FIELDS:
        require_text(fields, key, label)

    applicant_type = _value(fields, "applicantType").lower()
    if applicant_type not in APPLICANT_TYPES:
        raise ValidationFailure(
            "Applicant Type must be 'individual' or 'organization'.",
            field="applicantType",
        )

    # 2. Disciplines
    disciplines = tuple(d.strip() for d in submission.disciplines if d and d.strip())
    if not disciplines:
        raise ValidationFailure(
            "Please select at least one artistic discipline.", field="discipline[]"
        )

    # 3. Disbursement address
    if not is_valid_address(_value(fields, "btcAddress")):
        raise ValidationFailure(
            "Bitcoin wallet address format looks invalid.", field="btcAddress"
        )

    # 4. Organization-only requirements; individuals have none
    ein: Optional[str] = None
    if applicant_type == APPLICANT_ORGANIZATION:
        ein = _validate_organization(fields, submission.uploaded_fields)

    # 5. Affirmations
    for key, label in REQUIRED_AFFIRMATIONS:
        require_affirmation(fields, key, label)

    # 6. Legal signature
    signature_name = require_text(fields, "signatureName", "Legal Signature")

    # 7. Narrative length caps
    for key, label, limit in LENGTH_CAPS:
        if len(_value(fields, key)) > limit:
            raise ValidationFailure(f"{label} exceeds {limit} characters.", field=key)

    # 8. Requested amount
    requested_amount = parse_amount(
        _value(fields, "requestedAmount"), "Requested Grant Amount", "requestedAmount"
    )

    return EligibleSubmission(
        fields=dict(fields),
        applicant_type=applicant_type,
        disciplines=disciplines,
        requested_amount=requested_amount,
        ein=ein,
        signature_name=signature_name,
    )
