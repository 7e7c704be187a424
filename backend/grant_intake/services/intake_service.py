"""Streaming grant-application intake.

Consumes :class:`~grant_intake.services.multipart_stream.MultipartEventStream`
events, pipes every accepted file straight into the blob store while the
rest of the body is still being parsed, then validates, runs the bot check
and persists the record.

Every blob id allocated during a request is remembered.  If the request
fails for any reason after a write has started, all of them are deleted
in parallel before the error is surfaced.  Delete failures are logged with
``event=orphaned_blob`` and never replace the original error.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional, Protocol

from grant_intake.config import CERTIFICATION_POLICY_VERSION, IntakePolicy
from grant_intake.errors import (
    ExternalCheckFailure,
    IntakeError,
    PersistenceFailure,
    PolicyRejection,
    SizeViolation,
)
from grant_intake.helpers.btc_address import is_valid_bitcoin_address
from grant_intake.helpers.time_utils import Clock, utc_now
from grant_intake.models.submission_models import (
    ApplicantInfo,
    ApplicationRecord,
    ApplicationStatus,
    BackgroundInfo,
    Certification,
    ClientMeta,
    FundingRequest,
    OversightInfo,
    ProjectInfo,
    SignatureCapture,
    SupplementalLinks,
    UploadRef,
)
from grant_intake.services.eligibility import (
    SPONSOR_LINK_FIELD,
    AddressPredicate,
    EligibleSubmission,
    SubmissionInput,
    validate_submission,
)
from grant_intake.services.multipart_stream import (
    FieldPart,
    FileChunk,
    FileEnd,
    FileStart,
    MultipartEvent,
    MultipartEventStream,
)
from grant_intake.services.submission_store import SubmissionStore
from grant_intake.storage import BlobStore

logger = logging.getLogger(__name__)

HONEYPOT_FIELD = "company"
DISCIPLINE_FIELD = "discipline[]"
BOT_TOKEN_FIELD = "cf-turnstile-response"
SUPPRESSED_ID = "suppressed"

# Chunks buffered per in-flight file before parsing waits on the writer.
WRITE_QUEUE_DEPTH = 8

UNAVAILABLE_MESSAGE = (
    "Grant applications are temporarily unavailable. Please try again later."
)


class BotCheck(Protocol):
    async def verify(self, token: Optional[str], client_ip: Optional[str]) -> bool:
        ...


@dataclass(frozen=True)
class ClientContext:
    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class IntakeResult:
    record: Optional[ApplicationRecord] = None
    suppressed: bool = False

    @property
    def application_id(self) -> str:
        if self.suppressed or self.record is None:
            return SUPPRESSED_ID
        return self.record.id or ""


@dataclass
class _PendingWrite:
    file_id: str
    field_name: str
    filename: str
    mime_type: str
    task: asyncio.Task
    queue: asyncio.Queue
    size: int = 0


async def _drain_queue(queue: asyncio.Queue) -> AsyncIterator[bytes]:
    while True:
        chunk = await queue.get()
        if chunk is None:
            return
        yield chunk


class _UploadSession:
    """Per-request upload state: fields, in-flight writes and rollback ids."""

    def __init__(self, blob_store: BlobStore, policy: IntakePolicy) -> None:
        self.blob_store = blob_store
        self.policy = policy
        self.fields: dict[str, str] = {}
        self.disciplines: list[str] = []
        self.uploads: list[UploadRef] = []
        self.errors: list[IntakeError] = []
        self.allocated: list[str] = []
        self._writes: list[_PendingWrite] = []
        self._current: Optional[_PendingWrite] = None
        self._discarding = False

    # -- event handling -------------------------------------------------

    async def consume(self, event: MultipartEvent) -> None:
        if isinstance(event, FieldPart):
            self._on_field(event)
        elif isinstance(event, FileStart):
            self._on_file_start(event)
        elif isinstance(event, FileChunk):
            await self._on_file_chunk(event)
        elif isinstance(event, FileEnd):
            await self._on_file_end()

    def _on_field(self, event: FieldPart) -> None:
        if event.name == DISCIPLINE_FIELD:
            value = event.value.strip()
            if value:
                self.disciplines.append(value)
            return
        self.fields[event.name] = event.value

    def _on_file_start(self, event: FileStart) -> None:
        self._current = None
        self._discarding = True

        # An empty file input arrives as a part with no filename.
        if not event.filename:
            return
        # Once the request is known to fail, later files are not stored.
        if self.errors:
            return

        allowed = self.policy.allowed_file_fields.get(event.field_name)
        if allowed is None:
            self.errors.append(
                PolicyRejection(
                    "Only PDF uploads are accepted. Please use links for large samples."
                )
            )
            return
        if event.mime_type.lower() not in allowed:
            self.errors.append(PolicyRejection(f"{event.field_name}: must be a PDF."))
            return

        file_id = uuid.uuid4().hex
        self.allocated.append(file_id)
        queue: asyncio.Queue = asyncio.Queue(maxsize=WRITE_QUEUE_DEPTH)
        task = asyncio.create_task(
            self.blob_store.write(
                file_id,
                _drain_queue(queue),
                content_type=event.mime_type,
                metadata={"field_name": event.field_name},
            )
        )
        self._current = _PendingWrite(
            file_id=file_id,
            field_name=event.field_name,
            filename=event.filename,
            mime_type=event.mime_type,
            task=task,
            queue=queue,
        )
        self._discarding = False

    async def _on_file_chunk(self, event: FileChunk) -> None:
        if self._discarding or self._current is None:
            return
        current = self._current
        current.size += len(event.data)
        if current.size > self.policy.max_file_bytes:
            current.task.cancel()
            self.errors.append(
                SizeViolation(
                    "Upload too large. Please keep each file under "
                    f"{self.policy.max_file_mb}MB."
                )
            )
            logger.info(
                "Aborted upload %s for field %s over %d bytes",
                current.file_id,
                current.field_name,
                self.policy.max_file_bytes,
            )
            self._writes.append(current)
            self._current = None
            self._discarding = True
            return
        await self._feed(current, event.data)

    async def _on_file_end(self) -> None:
        if self._current is not None:
            await self._feed(self._current, None)
            self._writes.append(self._current)
        self._current = None
        self._discarding = False

    async def _feed(self, write: _PendingWrite, item: Optional[bytes]) -> None:
        """Queue ``item`` for the writer without outliving a failed writer."""
        if write.task.done():
            write.task.result()
            raise RuntimeError(f"writer for {write.file_id} stopped early")
        try:
            write.queue.put_nowait(item)
            return
        except asyncio.QueueFull:
            pass
        put = asyncio.ensure_future(write.queue.put(item))
        done, _ = await asyncio.wait(
            {put, write.task}, return_when=asyncio.FIRST_COMPLETED
        )
        if put not in done:
            put.cancel()
            write.task.result()
            raise RuntimeError(f"writer for {write.file_id} stopped early")

    # -- completion -----------------------------------------------------

    async def settle(self) -> None:
        """Wait for every write still running and collect finished uploads."""
        if self._current is not None:
            # Body ended inside a file part; the parser reports that separately.
            self._current.task.cancel()
            self._writes.append(self._current)
            self._current = None

        results = await asyncio.gather(
            *(w.task for w in self._writes), return_exceptions=True
        )
        for write, result in zip(self._writes, results):
            if isinstance(result, asyncio.CancelledError):
                continue
            if isinstance(result, BaseException):
                raise result
            self.uploads.append(
                UploadRef(
                    file_id=write.file_id,
                    field_name=write.field_name,
                    filename=write.filename,
                    mime_type=write.mime_type,
                    size=result,
                )
            )

    def raise_recorded(self) -> None:
        if self.errors:
            raise self.errors[0]

    @property
    def uploaded_fields(self) -> frozenset[str]:
        return frozenset(u.field_name for u in self.uploads)

    async def rollback(self) -> None:
        """Delete every blob this request allocated. Safe to call repeatedly."""
        running = [w.task for w in self._writes if not w.task.done()]
        if self._current is not None and not self._current.task.done():
            running.append(self._current.task)
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)

        if not self.allocated:
            return
        results = await asyncio.gather(
            *(self.blob_store.delete(file_id) for file_id in self.allocated),
            return_exceptions=True,
        )
        for file_id, result in zip(self.allocated, results):
            if isinstance(result, Exception):
                logger.error(
                    "event=orphaned_blob file_id=%s error=%s", file_id, result
                )


class IntakePipeline:
    """Turn one streamed multipart request into a persisted application."""

    def __init__(
        self,
        blob_store: BlobStore,
        store: SubmissionStore,
        policy: IntakePolicy,
        bot_check: BotCheck,
        is_valid_address: AddressPredicate = is_valid_bitcoin_address,
        clock: Clock = utc_now,
        certification_policy_version: int = CERTIFICATION_POLICY_VERSION,
    ) -> None:
        self.blob_store = blob_store
        self.store = store
        self.policy = policy
        self.bot_check = bot_check
        self.is_valid_address = is_valid_address
        self.clock = clock
        self.certification_policy_version = certification_policy_version

    async def submit(
        self,
        content_type: str,
        chunks: AsyncIterator[bytes],
        client: ClientContext,
    ) -> IntakeResult:
        stream = MultipartEventStream(
            content_type,
            max_fields=self.policy.max_fields,
            max_files=self.policy.max_files,
            max_field_bytes=self.policy.max_field_bytes,
        )
        session = _UploadSession(self.blob_store, self.policy)
        try:
            return await self._run(stream, chunks, session, client)
        except IntakeError as exc:
            await session.rollback()
            logger.info("Rejected grant submission (%s): %s", exc.code, exc.message)
            raise
        except asyncio.CancelledError:
            await session.rollback()
            raise
        except Exception as exc:
            await session.rollback()
            logger.exception("Grant intake failed")
            raise PersistenceFailure(UNAVAILABLE_MESSAGE) from exc

    async def _run(
        self,
        stream: MultipartEventStream,
        chunks: AsyncIterator[bytes],
        session: _UploadSession,
        client: ClientContext,
    ) -> IntakeResult:
        async for event in stream.events(chunks):
            await session.consume(event)
        await session.settle()

        if (session.fields.get(HONEYPOT_FIELD) or "").strip():
            logger.info("Suppressed honeypot submission from %s", client.ip)
            await session.rollback()
            return IntakeResult(suppressed=True)

        session.raise_recorded()

        eligible = validate_submission(
            SubmissionInput(
                fields=session.fields,
                disciplines=tuple(session.disciplines),
                uploaded_fields=session.uploaded_fields,
            ),
            self.is_valid_address,
        )

        passed = await self.bot_check.verify(
            session.fields.get(BOT_TOKEN_FIELD), client.ip
        )
        if not passed:
            raise ExternalCheckFailure("Bot verification failed. Please try again.")

        record = self.build_record(eligible, session.uploads, client)
        try:
            saved = await self.store.insert(record)
        except Exception as exc:
            logger.exception("Failed to persist grant submission")
            raise PersistenceFailure(UNAVAILABLE_MESSAGE) from exc

        logger.info(
            "Accepted grant submission %s with %d upload(s)",
            saved.id,
            len(saved.uploads),
        )
        return IntakeResult(record=saved)

    def build_record(
        self,
        eligible: EligibleSubmission,
        uploads: list[UploadRef],
        client: ClientContext,
    ) -> ApplicationRecord:
        now = self.clock()
        is_org = eligible.is_organization
        return ApplicationRecord(
            created_at=now,
            updated_at=now,
            status=ApplicationStatus.SUBMITTED,
            applicant=ApplicantInfo(
                legal_name=eligible.text("legalName"),
                email=eligible.text("email"),
                phone=eligible.optional_text("phone"),
                mailing_address=eligible.text("mailingAddress"),
                links=eligible.text("links"),
                applicant_type=eligible.applicant_type,
                nonprofit_or_sponsor=(
                    eligible.optional_text("nonprofitOrSponsor") if is_org else None
                ),
                ein=eligible.ein,
                disciplines=list(eligible.disciplines),
                btc_address=eligible.text("btcAddress"),
            ),
            project=ProjectInfo(
                title=eligible.text("projectTitle"),
                summary=eligible.text("projectSummary"),
                description=eligible.text("projectDescription"),
                timeline=eligible.text("timeline"),
                venue_platform=eligible.text("venuePlatform"),
                impact=eligible.text("impact"),
            ),
            funding=FundingRequest(
                requested_amount=eligible.requested_amount,
                budget_breakdown=eligible.text("budgetBreakdown"),
                fund_use=eligible.text("fundUse"),
            ),
            background=BackgroundInfo(
                bio=eligible.text("bio"),
                accomplishments=eligible.text("accomplishments"),
                equity_inclusion=eligible.text("equityInclusion"),
                evaluation_plan=eligible.text("evaluationPlan"),
            ),
            oversight=OversightInfo(reporting_plan=eligible.text("reportingPlan")),
            certification=Certification(
                signature=SignatureCapture(
                    name=eligible.signature_name,
                    signed_at=now,
                    policy_version=self.certification_policy_version,
                ),
            ),
            uploads=list(uploads),
            links=SupplementalLinks(
                fiscal_sponsor_agreement=(
                    eligible.optional_text(SPONSOR_LINK_FIELD) if is_org else None
                ),
                art_samples=eligible.optional_text("artSamplesLinks"),
            ),
            meta=ClientMeta(ip=client.ip, user_agent=client.user_agent),
        )
