"""
Tests for the streaming intake pipeline.

Exercises IntakePipeline end to end against in-memory blob and document
stores:
- accepted submissions with and without uploads
- rejection paths leave no blob behind (validation, size, policy, bot, DB)
- honeypot suppression
- rollback tolerates delete failures and repeated calls

Usage:
    cd backend && pytest tests/test_intake_service.py -v
"""

import logging

import pytest

from grant_intake.errors import (
    ExternalCheckFailure,
    PersistenceFailure,
    PolicyRejection,
    SizeViolation,
    ValidationFailure,
)
from grant_intake.services.intake_service import (
    SUPPRESSED_ID,
    ClientContext,
    IntakePipeline,
    _UploadSession,
)
from grant_intake.services.multipart_stream import FileChunk, FileEnd, FileStart
from tests.conftest import (
    PDF_BYTES,
    MemoryBlobStore,
    MemorySubmissionStore,
    StaticBotCheck,
    build_multipart,
    make_fields,
    make_form,
    stream_bytes,
)

CLIENT = ClientContext(ip="203.0.113.7", user_agent="pytest-agent")


def make_pipeline(blob_store, store, policy, clock, bot_check=None):
    return IntakePipeline(
        blob_store=blob_store,
        store=store,
        policy=policy,
        bot_check=bot_check or StaticBotCheck(True),
        clock=clock,
        certification_policy_version=3,
    )


async def submit(pipeline, fields, files=()):
    content_type, body = build_multipart(fields, files)
    return await pipeline.submit(content_type, stream_bytes(body), CLIENT)


def pdf(field="portfolioResume", name="portfolio.pdf", data=PDF_BYTES):
    return (field, name, data, "application/pdf")


def org_fields(**overrides):
    return make_fields(
        applicantType="organization",
        nonprofitOrSponsor="501(c)(3)",
        ein="123456789",
        **overrides,
    )


# ============================================================================
# ACCEPTED SUBMISSIONS
# ============================================================================

class TestAccepted:
    """Successful intake persists one record with the right shape."""

    async def test_individual_without_files(self, blob_store, submission_store, policy, clock):
        """Individuals need no uploads at all."""
        pipeline = make_pipeline(blob_store, submission_store, policy, clock)
        result = await submit(pipeline, make_form())

        assert not result.suppressed
        assert result.application_id in submission_store.records
        record = submission_store.records[result.application_id]
        assert record.status.value == "submitted"
        assert record.uploads == []
        assert record.applicant.disciplines == ["music"]
        assert record.meta.ip == "203.0.113.7"
        assert record.meta.user_agent == "pytest-agent"
        assert blob_store.blobs == {}

    async def test_signature_stamped_by_server(self, blob_store, submission_store, policy, clock):
        """Signature time comes from the server clock, with the policy version."""
        pipeline = make_pipeline(blob_store, submission_store, policy, clock)
        result = await submit(pipeline, make_form())

        signature = result.record.certification.signature
        assert signature.name == "Ada Lovelace"
        assert signature.signed_at == clock.now
        assert signature.policy_version == 3
        assert result.record.created_at == clock.now

    async def test_upload_streamed_to_blob_store(self, blob_store, submission_store, policy, clock):
        pipeline = make_pipeline(blob_store, submission_store, policy, clock)
        result = await submit(pipeline, make_form(), files=[pdf()])

        assert len(result.record.uploads) == 1
        upload = result.record.uploads[0]
        assert upload.field_name == "portfolioResume"
        assert upload.filename == "portfolio.pdf"
        assert upload.size == len(PDF_BYTES)
        data, content_type, metadata = blob_store.blobs[upload.file_id]
        assert data == PDF_BYTES
        assert content_type == "application/pdf"
        assert metadata == {"field_name": "portfolioResume"}

    async def test_pdf_with_type_parameters(self, blob_store, submission_store, policy, clock):
        """Browsers may append parameters to the part type; the media type decides."""
        pipeline = make_pipeline(blob_store, submission_store, policy, clock)
        upload = ("portfolioResume", "cv.pdf", PDF_BYTES, "application/pdf; name=cv.pdf")
        result = await submit(pipeline, make_form(), files=[upload])

        stored = result.record.uploads[0]
        assert stored.mime_type == "application/pdf"
        assert blob_store.blobs[stored.file_id][1] == "application/pdf"

    async def test_multiple_disciplines(self, blob_store, submission_store, policy, clock):
        pipeline = make_pipeline(blob_store, submission_store, policy, clock)
        result = await submit(pipeline, make_form(disciplines=("music", "film", " ")))
        assert result.record.applicant.disciplines == ["music", "film"]

    async def test_empty_file_input_ignored(self, blob_store, submission_store, policy, clock):
        """A file input left empty arrives without a filename and is skipped."""
        pipeline = make_pipeline(blob_store, submission_store, policy, clock)
        result = await submit(
            pipeline,
            make_form(),
            files=[("portfolioResume", "", b"", "application/octet-stream")],
        )
        assert result.record.uploads == []
        assert blob_store.started == []

    async def test_art_sample_links_kept(self, blob_store, submission_store, policy, clock):
        pipeline = make_pipeline(blob_store, submission_store, policy, clock)
        fields = make_fields(artSamplesLinks="https://vimeo.example/1\nhttps://vimeo.example/2")
        result = await submit(pipeline, make_form(fields))
        assert result.record.links.art_samples.endswith("vimeo.example/2")
        assert result.record.links.fiscal_sponsor_agreement is None


# ============================================================================
# ORGANIZATIONS
# ============================================================================

class TestOrganizationProof:
    async def test_org_without_proof_rejected(self, blob_store, submission_store, policy, clock):
        pipeline = make_pipeline(blob_store, submission_store, policy, clock)
        with pytest.raises(ValidationFailure) as exc_info:
            await submit(pipeline, make_form(org_fields()))
        assert exc_info.value.field == "fiscalSponsorAgreement"
        assert submission_store.records == {}

    async def test_org_with_uploaded_agreement(self, blob_store, submission_store, policy, clock):
        pipeline = make_pipeline(blob_store, submission_store, policy, clock)
        result = await submit(
            pipeline,
            make_form(org_fields()),
            files=[pdf("fiscalSponsorAgreement", "agreement.pdf")],
        )
        assert result.record.applicant.ein == "12-3456789"
        assert [u.field_name for u in result.record.uploads] == ["fiscalSponsorAgreement"]

    async def test_org_with_agreement_link(self, blob_store, submission_store, policy, clock):
        pipeline = make_pipeline(blob_store, submission_store, policy, clock)
        fields = org_fields(fiscalSponsorAgreementLink="https://drive.example/agreement")
        result = await submit(pipeline, make_form(fields))
        assert result.record.links.fiscal_sponsor_agreement == "https://drive.example/agreement"
        assert result.record.applicant.nonprofit_or_sponsor == "501(c)(3)"


# ============================================================================
# REJECTIONS LEAVE NO BLOBS
# ============================================================================

class TestRollback:
    """Every rejection after a write started deletes what was written."""

    async def test_missing_field_removes_uploads(self, blob_store, submission_store, policy, clock):
        pipeline = make_pipeline(blob_store, submission_store, policy, clock)
        with pytest.raises(ValidationFailure):
            await submit(pipeline, make_form(make_fields(projectTitle="")), files=[pdf()])

        assert len(blob_store.started) == 1
        assert blob_store.blobs == {}, "Uploaded blob must be deleted on rejection"
        assert blob_store.deleted == blob_store.started
        assert submission_store.records == {}

    async def test_oversized_file_aborted(self, blob_store, submission_store, policy, clock):
        """Exceeding the per-file ceiling aborts the write and rejects with 413."""
        pipeline = make_pipeline(blob_store, submission_store, policy, clock)
        big = b"x" * (policy.max_file_bytes + 1)
        with pytest.raises(SizeViolation) as exc_info:
            await submit(pipeline, make_form(), files=[pdf(data=big), pdf("fiscalSponsorAgreement")])

        assert exc_info.value.status_code == 413
        assert "under 1MB" in exc_info.value.message
        assert blob_store.blobs == {}
        assert len(blob_store.started) == 1, "Files after a recorded error are not stored"
        assert blob_store.deleted == blob_store.started

    async def test_disallowed_field(self, blob_store, submission_store, policy, clock):
        pipeline = make_pipeline(blob_store, submission_store, policy, clock)
        with pytest.raises(PolicyRejection) as exc_info:
            await submit(pipeline, make_form(), files=[pdf("artSample", "sample.pdf")])
        assert "Only PDF uploads" in exc_info.value.message
        assert blob_store.started == []

    async def test_non_pdf_rejected(self, blob_store, submission_store, policy, clock):
        pipeline = make_pipeline(blob_store, submission_store, policy, clock)
        with pytest.raises(PolicyRejection) as exc_info:
            await submit(
                pipeline,
                make_form(),
                files=[pdf(), ("fiscalSponsorAgreement", "a.png", b"\x89PNG", "image/png")],
            )
        assert exc_info.value.message == "fiscalSponsorAgreement: must be a PDF."
        assert blob_store.blobs == {}
        assert len(blob_store.deleted) == 1

    async def test_bot_check_failure(self, blob_store, submission_store, policy, clock):
        bot = StaticBotCheck(False)
        pipeline = make_pipeline(blob_store, submission_store, policy, clock, bot)
        fields = make_fields(**{"cf-turnstile-response": "token-abc"})
        with pytest.raises(ExternalCheckFailure):
            await submit(pipeline, make_form(fields), files=[pdf()])

        assert bot.calls == [("token-abc", "203.0.113.7")]
        assert blob_store.blobs == {}
        assert submission_store.records == {}

    async def test_bot_check_runs_after_validation(self, blob_store, submission_store, policy, clock):
        """Invalid submissions never reach the external bot check."""
        bot = StaticBotCheck(True)
        pipeline = make_pipeline(blob_store, submission_store, policy, clock, bot)
        with pytest.raises(ValidationFailure):
            await submit(pipeline, make_form(make_fields(email="")))
        assert bot.calls == []

    async def test_insert_failure(self, blob_store, policy, clock):
        """A document-store failure surfaces as 503 and removes the blobs."""
        store = MemorySubmissionStore(fail_insert=True)
        pipeline = make_pipeline(blob_store, store, policy, clock)
        with pytest.raises(PersistenceFailure) as exc_info:
            await submit(pipeline, make_form(), files=[pdf()])

        assert exc_info.value.status_code == 503
        assert blob_store.blobs == {}
        assert blob_store.deleted == blob_store.started

    async def test_blob_write_failure(self, submission_store, policy, clock):
        blob_store = MemoryBlobStore(fail_write=True)
        pipeline = make_pipeline(blob_store, submission_store, policy, clock)
        with pytest.raises(PersistenceFailure):
            await submit(pipeline, make_form(), files=[pdf()])
        assert submission_store.records == {}
        assert blob_store.deleted == blob_store.started

    async def test_delete_failure_logged_not_raised(self, submission_store, policy, clock, caplog):
        """Orphaned blobs are logged; the original error still reaches the caller."""
        blob_store = MemoryBlobStore(fail_delete=True)
        pipeline = make_pipeline(blob_store, submission_store, policy, clock)
        with caplog.at_level(logging.ERROR):
            with pytest.raises(ValidationFailure):
                await submit(pipeline, make_form(make_fields(bio="")), files=[pdf()])

        assert f"event=orphaned_blob file_id={blob_store.started[0]}" in caplog.text


# ============================================================================
# HONEYPOT
# ============================================================================

class TestHoneypot:
    async def test_filled_honeypot_suppressed(self, blob_store, submission_store, policy, clock):
        """Bots get a success-shaped result and nothing is stored."""
        pipeline = make_pipeline(blob_store, submission_store, policy, clock)
        fields = make_fields(company="Spam LLC")
        result = await submit(pipeline, make_form(fields), files=[pdf()])

        assert result.suppressed
        assert result.application_id == SUPPRESSED_ID
        assert submission_store.records == {}
        assert blob_store.blobs == {}

    async def test_honeypot_beats_validation(self, blob_store, submission_store, policy, clock):
        """Even an invalid form is suppressed silently when the honeypot is set."""
        pipeline = make_pipeline(blob_store, submission_store, policy, clock)
        result = await submit(pipeline, [("company", "x"), ("email", "bot@example.org")])
        assert result.suppressed


# ============================================================================
# UPLOAD SESSION
# ============================================================================

class TestUploadSession:
    async def test_rollback_is_idempotent(self, blob_store, policy):
        session = _UploadSession(blob_store, policy)
        await session.consume(FileStart("portfolioResume", "cv.pdf", "application/pdf"))
        await session.consume(FileChunk(b"%PDF-1.4"))
        await session.consume(FileEnd())
        await session.settle()
        assert session.uploaded_fields == frozenset({"portfolioResume"})

        await session.rollback()
        await session.rollback()

        assert blob_store.blobs == {}
        assert blob_store.deleted == session.allocated * 2

    async def test_rollback_cancels_in_flight_write(self, blob_store, policy):
        """A write still waiting for bytes never commits once rolled back."""
        session = _UploadSession(blob_store, policy)
        await session.consume(FileStart("portfolioResume", "cv.pdf", "application/pdf"))
        await session.consume(FileChunk(b"partial"))
        await session.rollback()

        assert blob_store.blobs == {}
        assert blob_store.deleted == session.allocated
