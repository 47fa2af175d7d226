"""
Document lifecycle: UPLOADED -> PARSED_RAW -> CANONICAL -> EVENTS_SAVED.

Any stage may be re-run; a re-run restarts the chain from that stage.
ERROR is reachable from every state and is left by re-running a stage.
Each stage requires the previous stage's output to be present on the row;
the previous output is only overwritten once the new output is ready.
"""

import hashlib
import logging
import uuid
from enum import Enum
from typing import Optional, Union

from sqlmodel import select
from sqlalchemy.ext.asyncio import AsyncSession

from matchdesk.config import get_settings
from matchdesk.models import Document, as_utc, utc_now
from matchdesk.sumula.canonical import CanonicalReport
from matchdesk.sumula.errors import (
    DocumentNotFoundError,
    InvalidTransitionError,
    truncate_message,
)
from matchdesk.sumula.identity import Scope, derive_match_key, parse_match_key
from matchdesk.sumula.writer import write_document

logger = logging.getLogger(__name__)


class DocumentStatus(str, Enum):
    UPLOADED = "UPLOADED"
    PARSED_RAW = "PARSED_RAW"
    CANONICAL = "CANONICAL"
    EVENTS_SAVED = "EVENTS_SAVED"
    ERROR = "ERROR"


ALL_STATES = frozenset(DocumentStatus)

# target state -> states it may be entered from
TRANSITIONS = {
    DocumentStatus.UPLOADED: ALL_STATES,
    DocumentStatus.PARSED_RAW: ALL_STATES,
    DocumentStatus.CANONICAL: frozenset(
        {
            DocumentStatus.PARSED_RAW,
            DocumentStatus.CANONICAL,
            DocumentStatus.EVENTS_SAVED,
            DocumentStatus.ERROR,
        }
    ),
    DocumentStatus.EVENTS_SAVED: frozenset(
        {DocumentStatus.CANONICAL, DocumentStatus.EVENTS_SAVED, DocumentStatus.ERROR}
    ),
    DocumentStatus.ERROR: ALL_STATES,
}


def can_transition(current: Union[str, DocumentStatus], target: DocumentStatus) -> bool:
    return DocumentStatus(current) in TRANSITIONS[target]


def _require_transition(document: Document, target: DocumentStatus, stage: str) -> None:
    if not can_transition(document.status, target):
        raise InvalidTransitionError(
            f"document {document.id} cannot move from {document.status} to {target.value}",
            stage=stage,
            document_id=str(document.id),
        )


def require_raw_text(document: Document, stage: str = "PARSE_CANONICAL") -> str:
    if not document.raw_text or not document.raw_text.strip():
        raise InvalidTransitionError(
            "document has no extracted text; run parse first",
            stage=stage,
            document_id=str(document.id),
        )
    return document.raw_text


def require_canonical(document: Document, stage: str = "LOAD_DOCUMENT") -> dict:
    """Canonical report of the current upload, checked before anything is deleted.

    A re-upload keeps the previous canonical_json on the row; it only counts
    once a parse of the new file has replaced it.
    """
    if not document.canonical_json:
        raise InvalidTransitionError(
            "document has no canonical_json; run parse first",
            stage=stage,
            document_id=str(document.id),
        )
    if DocumentStatus(document.status) in (DocumentStatus.UPLOADED, DocumentStatus.PARSED_RAW):
        raise InvalidTransitionError(
            f"document {document.id} is {document.status}; run parse first",
            stage=stage,
            document_id=str(document.id),
        )
    canonical_at = as_utc(document.canonical_at)
    if canonical_at is None or canonical_at < as_utc(document.uploaded_at):
        raise InvalidTransitionError(
            f"canonical report of document {document.id} predates the current upload; run parse first",
            stage=stage,
            document_id=str(document.id),
        )
    return document.canonical_json


def file_checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def get_document(
    session: AsyncSession, document_id: Union[str, uuid.UUID], stage: str = "LOAD_DOCUMENT"
) -> Document:
    try:
        doc_uuid = document_id if isinstance(document_id, uuid.UUID) else uuid.UUID(str(document_id))
    except ValueError:
        raise DocumentNotFoundError(
            f"document id {document_id!r} is not a UUID", stage=stage, document_id=str(document_id)
        )
    document = await session.get(Document, doc_uuid)
    if document is None:
        raise DocumentNotFoundError(
            f"document {document_id} not found", stage=stage, document_id=str(document_id)
        )
    return document


async def get_latest_document_for_match(
    session: AsyncSession, match_key: str, stage: str = "LOAD_DOCUMENT"
) -> Document:
    """Most recently uploaded document of a match."""
    parse_match_key(match_key)
    result = await session.execute(
        select(Document)
        .where(Document.match_key == match_key)
        .order_by(Document.uploaded_at.desc())
        .limit(1)
    )
    document = result.scalars().first()
    if document is None:
        raise DocumentNotFoundError(f"no document for {match_key}", stage=stage)
    return document


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


async def register_upload(
    session: AsyncSession,
    *,
    scope: Scope,
    backing_id: uuid.UUID,
    storage_bucket: str,
    storage_path: str,
    sha256: str,
    size_bytes: int,
    parser_version: Optional[str] = None,
) -> tuple[Document, bool]:
    """Insert or reset the document row of a match. Returns (document, created).

    A re-upload keeps previous stage outputs until the next parse replaces them.
    """
    match_id = backing_id if scope is Scope.PROD else None
    sandbox_match_id = backing_id if scope is Scope.SANDBOX else None
    match_key = derive_match_key(scope, match_id, sandbox_match_id)

    result = await session.execute(
        select(Document).where(
            Document.source == "FPF",
            Document.doc_type == "FPF_SUMULA",
            Document.match_key == match_key,
        )
    )
    document = result.scalars().first()
    created = document is None
    if created:
        document = Document(
            scope=scope.value,
            match_id=match_id,
            sandbox_match_id=sandbox_match_id,
            match_key=match_key,
            storage_bucket=storage_bucket,
            storage_path=storage_path,
        )

    document.storage_bucket = storage_bucket
    document.storage_path = storage_path
    document.sha256 = sha256
    document.size_bytes = size_bytes
    document.parser_version = parser_version or get_settings().PARSER_VERSION
    document.status = DocumentStatus.UPLOADED.value
    document.parse_error = None
    document.uploaded_at = utc_now()
    await write_document(session, document)
    return document, created


async def mark_parsed_raw(session: AsyncSession, document: Document, raw_text: str) -> Document:
    _require_transition(document, DocumentStatus.PARSED_RAW, "SAVE_RAW")
    document.raw_text = raw_text
    document.status = DocumentStatus.PARSED_RAW.value
    document.parsed_at = utc_now()
    document.parse_error = None
    return await write_document(session, document)


async def mark_canonical(
    session: AsyncSession, document: Document, report: CanonicalReport
) -> Document:
    _require_transition(document, DocumentStatus.CANONICAL, "SAVE_CANONICAL")
    require_raw_text(document, stage="SAVE_CANONICAL")
    document.canonical_json = report.to_dict()
    document.status = DocumentStatus.CANONICAL.value
    document.canonical_at = utc_now()
    document.parse_error = None
    return await write_document(session, document)


async def mark_events_saved(session: AsyncSession, document: Document) -> Document:
    _require_transition(document, DocumentStatus.EVENTS_SAVED, "SAVE_DOCUMENT")
    require_canonical(document, stage="SAVE_DOCUMENT")
    document.status = DocumentStatus.EVENTS_SAVED.value
    document.events_saved_at = utc_now()
    document.parse_error = None
    return await write_document(session, document)


async def mark_error(
    session: AsyncSession, document_id: Union[str, uuid.UUID], message: str
) -> Optional[Document]:
    """Flag a document as failed. Stage outputs already stored are kept."""
    document = await session.get(
        Document, document_id if isinstance(document_id, uuid.UUID) else uuid.UUID(str(document_id))
    )
    if document is None:
        return None
    document.status = DocumentStatus.ERROR.value
    document.parse_error = truncate_message(message, get_settings().ERROR_MESSAGE_MAX_CHARS)
    return await write_document(session, document)
