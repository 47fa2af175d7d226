"""HTTP triggers for the match-sheet pipeline.

Endpoints:
- POST /sumula/upload          store a PDF and register its document
- POST /sumula/parse           extract text and build the canonical report
- POST /sumula/ingest          materialize canonical events (optional stats rebuild)
- POST /sumula/stats           rebuild DERIVED player stats
- GET  /sumula/documents/{id}  document status view for operators

All endpoints require the X-Cron-Secret header. Pipeline failures surface as
PipelineError and are rendered by the app-level handler in matchdesk.main.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from pydantic import BaseModel, Field

from matchdesk.database import get_session_factory
from matchdesk.models import as_utc
from matchdesk.sumula import documents, pipeline
from matchdesk.sumula.canonical import load_canonical
from matchdesk.sumula.storage import StorageAdapter, get_storage
from matchdesk.sumula.text_extraction import TextExtractor, extract_pdf_text
from matchdesk.security import limiter, rate_limit, verify_cron_secret

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/sumula",
    tags=["sumula"],
    dependencies=[Depends(verify_cron_secret)],
)


def get_text_extractor() -> TextExtractor:
    return extract_pdf_text


# =============================================================================
# Pydantic Models
# =============================================================================


class DocumentRequest(BaseModel):
    """Request naming one document."""

    document_id: Optional[str] = Field(default=None, alias="documentId")

    class Config:
        populate_by_name = True


class IngestRequest(DocumentRequest):
    """Ingest request; ``rebuild`` chains a stats rebuild after the events are saved."""

    rebuild: bool = False


class StatsRequest(BaseModel):
    """Stats rebuild by match key, document id, or both."""

    match_key: Optional[str] = Field(default=None, alias="matchKey")
    document_id: Optional[str] = Field(default=None, alias="documentId")

    class Config:
        populate_by_name = True


# =============================================================================
# Endpoints
# =============================================================================


@router.post("/upload")
@limiter.limit(rate_limit)
async def upload_sumula(
    request: Request,
    file: UploadFile = File(...),
    scope: Optional[str] = Form("PROD"),
    match_id: Optional[str] = Form(None),
    sandbox_match_id: Optional[str] = Form(None),
    session_factory=Depends(get_session_factory),
    storage: StorageAdapter = Depends(get_storage),
):
    data = await file.read()
    result = await pipeline.upload_document(
        session_factory=session_factory,
        storage=storage,
        data=data,
        scope=scope,
        match_id=match_id or None,
        sandbox_match_id=sandbox_match_id or None,
        filename=file.filename,
        content_type=file.content_type,
    )
    return {"ok": True, **result.to_dict()}


@router.post("/parse")
@limiter.limit(rate_limit)
async def parse_sumula(
    request: Request,
    body: DocumentRequest,
    session_factory=Depends(get_session_factory),
    storage: StorageAdapter = Depends(get_storage),
    extract_text: TextExtractor = Depends(get_text_extractor),
):
    result = await pipeline.parse_document(
        body.document_id,
        session_factory=session_factory,
        storage=storage,
        extract_text=extract_text,
    )
    return {"ok": True, **result.to_dict()}


@router.post("/ingest")
@limiter.limit(rate_limit)
async def ingest_sumula(
    request: Request,
    body: IngestRequest,
    session_factory=Depends(get_session_factory),
):
    result = await pipeline.ingest_document(
        body.document_id,
        session_factory=session_factory,
        rebuild=body.rebuild,
    )
    return {"ok": True, **result.to_dict()}


@router.post("/stats")
@limiter.limit(rate_limit)
async def rebuild_sumula_stats(
    request: Request,
    body: StatsRequest,
    session_factory=Depends(get_session_factory),
):
    result = await pipeline.rebuild_stats(
        session_factory=session_factory,
        match_key=body.match_key,
        document_id=body.document_id,
    )
    return {"ok": True, **result}


@router.get("/documents/{document_id}")
@limiter.limit(rate_limit)
async def get_sumula_document(
    request: Request,
    document_id: str,
    session_factory=Depends(get_session_factory),
):
    """Status, last error and stage timestamps of one document."""
    async with session_factory() as session:
        document = await documents.get_document(session, document_id, stage="REQUEST")

    report = load_canonical(document.canonical_json)
    return {
        "id": str(document.id),
        "scope": document.scope,
        "match_key": document.match_key,
        "status": document.status,
        "error": document.parse_error,
        "sha256": document.sha256,
        "size_bytes": document.size_bytes,
        "parser_version": document.parser_version,
        "storage": {"bucket": document.storage_bucket, "path": document.storage_path},
        "preview": report.preview() if report else None,
        "timestamps": {
            "uploaded_at": _iso(document.uploaded_at),
            "parsed_at": _iso(document.parsed_at),
            "canonical_at": _iso(document.canonical_at),
            "events_saved_at": _iso(document.events_saved_at),
            "updated_at": _iso(document.updated_at),
        },
    }


def _iso(value) -> Optional[str]:
    return as_utc(value).isoformat() if value else None
