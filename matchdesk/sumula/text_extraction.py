"""PDF match sheet -> plain text."""

import asyncio
import io
import logging
from typing import Awaitable, Callable

import pdfplumber

from matchdesk.sumula.errors import TextExtractionError

logger = logging.getLogger(__name__)

TextExtractor = Callable[[bytes], Awaitable[str]]


def _extract_text_sync(data: bytes) -> str:
    pages = []
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        for page in pdf.pages:
            pages.append(page.extract_text() or "")
    return "\n".join(pages)


async def extract_pdf_text(data: bytes) -> str:
    """Extract the text of every page. Empty output is an error."""
    try:
        text = await asyncio.to_thread(_extract_text_sync, data)
    except Exception as e:
        raise TextExtractionError(f"PDF text extraction failed: {e}", stage="PARSE_RAW") from e

    if not text.strip():
        raise TextExtractionError(
            "PDF text extraction returned empty content.", stage="PARSE_RAW"
        )
    logger.debug(f"[SUMULA_PARSE] extracted {len(text)} chars of text")
    return text
