"""
Match-sheet pipeline triggers: upload, parse, ingest, rebuild stats.

Each trigger validates its input before touching storage or the database,
records a run in the ledger, and raises PipelineError (tagged with the
failing stage) instead of returning partial results. Work and ledger use
separate sessions from ``session_factory``.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from typing import Optional

from matchdesk.config import get_settings
from matchdesk.jobs.tracking import RunKind, tracked_run
from matchdesk.models import Match, SandboxMatch
from matchdesk.sumula import documents
from matchdesk.sumula.errors import (
    InvalidTransitionError,
    MatchNotFoundError,
    PipelineError,
    RequestValidationError,
    UnsupportedMediaError,
)
from matchdesk.sumula.identity import Scope, is_match_key, parse_match_key, resolve_scope
from matchdesk.sumula.linking import AthleteLinker
from matchdesk.sumula.materializer import materialize_document
from matchdesk.sumula.parser import parse_to_canonical
from matchdesk.sumula.stats import rebuild_player_stats
from matchdesk.sumula.storage import StorageAdapter, build_document_path
from matchdesk.sumula.text_extraction import TextExtractor, extract_pdf_text

logger = logging.getLogger(__name__)

PARSE_STAGES = (
    "REQUEST",
    "LOAD_DOCUMENT",
    "DOWNLOAD_PDF",
    "PARSE_RAW",
    "SAVE_RAW",
    "PARSE_CANONICAL",
    "SAVE_CANONICAL",
)
INGEST_STAGES = (
    "REQUEST",
    "SYNC_RUN",
    "LOAD_DOCUMENT",
    "DELETE_EXISTING",
    "INSERT_EVENTS",
    "SAVE_DOCUMENT",
)
STATS_STAGES = ("REQUEST", "SYNC_RUN", "LOAD_DOCUMENT", "REBUILD")

PDF_CONTENT_TYPES = ("application/pdf", "application/x-pdf")


@dataclass
class UploadResult:
    document_id: str
    match_key: str
    scope: str
    storage_bucket: str
    storage_path: str
    sha256: str
    size_bytes: int
    created: bool
    status: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ParseResult:
    document_id: str
    match_key: str
    status: str
    raw_text_chars: int
    preview: dict
    run_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class IngestResult:
    document_id: str
    match_key: str
    status: str
    deleted: dict
    inserted: dict
    dropped: dict
    run_id: Optional[str] = None
    stats: Optional[dict] = field(default=None)

    def to_dict(self) -> dict:
        return asdict(self)


def _require_document_id(document_id) -> uuid.UUID:
    try:
        return document_id if isinstance(document_id, uuid.UUID) else uuid.UUID(str(document_id).strip())
    except (ValueError, AttributeError):
        raise RequestValidationError(
            "documentId must be a valid UUID.",
            stage="REQUEST",
            document_id=str(document_id) if document_id else None,
        )


def _mark_document_error(session_factory, document_id: uuid.UUID):
    async def hook(error: PipelineError) -> None:
        error.document_id = str(document_id)
        # A refused transition is the caller's mistake; the document keeps its state
        if isinstance(error, InvalidTransitionError):
            return
        async with session_factory() as session:
            await documents.mark_error(session, document_id, f"{error.stage}: {error.message}")
            await session.commit()

    return hook


def _is_pdf(filename: Optional[str], content_type: Optional[str], data: bytes) -> bool:
    if content_type and content_type.split(";")[0].strip().lower() in PDF_CONTENT_TYPES:
        return True
    if filename and filename.lower().endswith(".pdf"):
        return True
    return data[:5] == b"%PDF-"


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------


async def upload_document(
    *,
    session_factory,
    storage: StorageAdapter,
    data: bytes,
    scope: Optional[str] = "PROD",
    match_id=None,
    sandbox_match_id=None,
    filename: Optional[str] = None,
    content_type: Optional[str] = None,
) -> UploadResult:
    """Store a match-sheet PDF and register (or reset) its document row."""
    settings = get_settings()

    # Scope is checked before anything is written
    resolved_scope, backing_id = resolve_scope(scope or "PROD", match_id, sandbox_match_id)

    if not data:
        raise RequestValidationError("uploaded file is empty", stage="REQUEST")
    if len(data) > settings.UPLOAD_MAX_BYTES:
        raise RequestValidationError(
            f"file exceeds {settings.UPLOAD_MAX_BYTES} bytes",
            stage="REQUEST",
            code="PAYLOAD_TOO_LARGE",
            status_code=413,
        )
    if not _is_pdf(filename, content_type, data):
        raise UnsupportedMediaError("only PDF match sheets are accepted", stage="REQUEST")

    backing_model = Match if resolved_scope is Scope.PROD else SandboxMatch
    async with session_factory() as session:
        if await session.get(backing_model, backing_id) is None:
            raise MatchNotFoundError(
                f"{backing_model.__tablename__} row {backing_id} not found", stage="REQUEST"
            )

    bucket = settings.STORAGE_BUCKET
    path = build_document_path(resolved_scope.value, backing_id)
    await storage.upload(bucket, path, data, "application/pdf")

    async with session_factory() as session:
        try:
            document, created = await documents.register_upload(
                session,
                scope=resolved_scope,
                backing_id=backing_id,
                storage_bucket=bucket,
                storage_path=path,
                sha256=documents.file_checksum(data),
                size_bytes=len(data),
                parser_version=settings.PARSER_VERSION,
            )
            await session.commit()
        except PipelineError:
            await session.rollback()
            raise

    logger.info(
        f"[SUMULA_UPLOAD] {document.match_key} stored at {bucket}/{path} "
        f"({len(data)} bytes, {'new' if created else 'replaced'})"
    )
    return UploadResult(
        document_id=str(document.id),
        match_key=document.match_key,
        scope=document.scope,
        storage_bucket=bucket,
        storage_path=path,
        sha256=document.sha256,
        size_bytes=len(data),
        created=created,
        status=document.status,
    )


# ---------------------------------------------------------------------------
# Parse
# ---------------------------------------------------------------------------


async def parse_document(
    document_id,
    *,
    session_factory,
    storage: StorageAdapter,
    extract_text: TextExtractor = extract_pdf_text,
) -> ParseResult:
    """Download, extract text, build the canonical report. Re-runnable."""
    doc_uuid = _require_document_id(document_id)

    async with tracked_run(
        session_factory,
        RunKind.SUMULA_PARSE,
        PARSE_STAGES,
        on_error=_mark_document_error(session_factory, doc_uuid),
        document_id=doc_uuid,
    ) as run:
        async with session_factory() as session:
            run.stage = "LOAD_DOCUMENT"
            document = await documents.get_document(session, doc_uuid)

            run.stage = "DOWNLOAD_PDF"
            data = await storage.download(document.storage_bucket, document.storage_path)

            run.stage = "PARSE_RAW"
            raw_text = await extract_text(data)

            run.stage = "SAVE_RAW"
            await documents.mark_parsed_raw(session, document, raw_text)
            await session.commit()

            run.stage = "PARSE_CANONICAL"
            report = parse_to_canonical(raw_text)

            run.stage = "SAVE_CANONICAL"
            await documents.mark_canonical(session, document, report)
            await session.commit()

        preview = report.preview()
        run.summary = {"document_id": str(doc_uuid), "match_key": document.match_key, **preview}

    logger.info(f"[SUMULA_PARSE] {document.match_key} document={doc_uuid} preview={preview}")
    return ParseResult(
        document_id=str(doc_uuid),
        match_key=document.match_key,
        status=document.status,
        raw_text_chars=len(raw_text),
        preview=preview,
        run_id=str(run.run_id),
    )


# ---------------------------------------------------------------------------
# Ingest
# ---------------------------------------------------------------------------


async def ingest_document(
    document_id,
    *,
    session_factory,
    rebuild: bool = False,
    club_name: Optional[str] = None,
) -> IngestResult:
    """Replace the match's normalized events with the document's canonical events."""
    doc_uuid = _require_document_id(document_id)
    club_name = club_name or get_settings().ATHLETE_CLUB_NAME

    async with tracked_run(
        session_factory,
        RunKind.SUMULA_INGEST,
        INGEST_STAGES,
        on_error=_mark_document_error(session_factory, doc_uuid),
        document_id=doc_uuid,
    ) as run:
        async with session_factory() as session:
            run.stage = "LOAD_DOCUMENT"
            document = await documents.get_document(session, doc_uuid)
            documents.require_canonical(document)
            linker = await AthleteLinker.load(session, club_name=club_name)

            run.stage = "DELETE_EXISTING"
            outcome = await materialize_document(session, document, linker=linker)
            match_key, match_id = document.match_key, document.match_id

        run.summary = {
            "document_id": outcome.document_id,
            "match_key": outcome.match_key,
            "deleted": outcome.deleted,
            "inserted": outcome.inserted,
            "dropped": outcome.dropped,
        }

    result = IngestResult(
        document_id=outcome.document_id,
        match_key=outcome.match_key,
        status=documents.DocumentStatus.EVENTS_SAVED.value,
        deleted=outcome.deleted,
        inserted=outcome.inserted,
        dropped=outcome.dropped,
        run_id=str(run.run_id),
    )

    if rebuild:
        # Events are committed at this point; a failed rebuild is reported, not undone
        try:
            stats = await rebuild_stats(
                session_factory=session_factory,
                document_id=doc_uuid,
                match_key=match_key,
            )
            result.stats = {"ok": True, **stats}
        except PipelineError as e:
            logger.warning(f"[SUMULA_INGEST] stats rebuild after ingest failed: {e.message}")
            result.stats = {"ok": False, "error": e.to_dict()}

    logger.info(f"[SUMULA_INGEST] done {match_key} (match_id={match_id}) inserted={outcome.inserted}")
    return result


# ---------------------------------------------------------------------------
# Stats rebuild
# ---------------------------------------------------------------------------


async def rebuild_stats(
    *,
    session_factory,
    match_key: Optional[str] = None,
    document_id=None,
) -> dict:
    """Recompute DERIVED player stats for a match.

    Accepts a document id, a match key, or both (which must agree). A bare
    match key resolves to its most recently uploaded document.
    """
    if not match_key and not document_id:
        raise RequestValidationError("matchKey or documentId is required", stage="REQUEST")
    if match_key and not is_match_key(match_key):
        raise RequestValidationError(
            f"matchKey must look like PROD:<uuid> or SANDBOX:<uuid>, got {match_key!r}",
            stage="REQUEST",
        )
    if match_key:
        scope, backing_id = parse_match_key(match_key)
        match_key = f"{scope.value}:{backing_id}"
    doc_uuid = _require_document_id(document_id) if document_id else None

    async with tracked_run(
        session_factory,
        RunKind.SUMULA_STATS_REBUILD,
        STATS_STAGES,
        match_key=match_key,
        document_id=doc_uuid,
    ) as run:
        async with session_factory() as session:
            run.stage = "LOAD_DOCUMENT"
            if doc_uuid is not None:
                document = await documents.get_document(session, doc_uuid)
                if match_key and document.match_key != match_key:
                    raise RequestValidationError(
                        f"document {doc_uuid} belongs to {document.match_key}, not {match_key}",
                        stage="LOAD_DOCUMENT",
                        document_id=str(doc_uuid),
                    )
            else:
                document = await documents.get_latest_document_for_match(session, match_key)

            run.stage = "REBUILD"
            result = await rebuild_player_stats(
                session,
                match_key=document.match_key,
                document_id=document.id,
                match_id=document.match_id,
            )
        run.summary = result.to_dict()

    return {**result.to_dict(), "run_id": str(run.run_id)}
