"""
Single write path for documents, match events and player stats.

Every insert of a scope-carrying row goes through here so the scope rules
are checked in one place:
- a PROD row references a production match and nothing else
- a SANDBOX row references a sandbox match and never a production match
- match_key always equals the key derived from scope + id
- DERIVED player stats are only written by the rebuilder
"""

import logging
from typing import Iterable, Optional, Sequence, Type

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from matchdesk.models import (
    DERIVED_SOURCE,
    Document,
    MatchCard,
    MatchGoal,
    MatchLineup,
    MatchPlayerStat,
    MatchScopedRow,
    MatchSubstitution,
    utc_now,
)
from matchdesk.sumula.errors import IntegrityViolation, ScopeValidationError
from matchdesk.sumula.identity import Scope, derive_match_key, parse_match_key

logger = logging.getLogger(__name__)

EVENT_TABLES: tuple[Type[MatchScopedRow], ...] = (
    MatchLineup,
    MatchGoal,
    MatchCard,
    MatchSubstitution,
)

VALID_SIDES = ("HOME", "AWAY")


def normalize_document(document: Document) -> Document:
    """Re-derive match_key from scope + ids and reject inconsistent documents."""
    expected = derive_match_key(document.scope, document.match_id, document.sandbox_match_id)
    if document.match_key and document.match_key != expected:
        raise ScopeValidationError(
            f"match_key {document.match_key} does not match scope ids ({expected})"
        )
    document.scope = expected.split(":", 1)[0]
    document.match_key = expected
    return document


def check_scoped_row(row: MatchScopedRow) -> None:
    """Validate one event or stat row before it is written."""
    scope, backing_id = parse_match_key(row.match_key)

    if scope is Scope.SANDBOX and row.match_id is not None:
        raise ScopeValidationError(
            f"sandbox row {row.match_key} must not reference a production match",
            stage="WRITE",
        )
    if scope is Scope.PROD and row.match_id is not None and row.match_id != backing_id:
        raise ScopeValidationError(
            f"row match_id {row.match_id} does not match {row.match_key}",
            stage="WRITE",
        )
    if not row.event_uid:
        raise IntegrityViolation(f"row for {row.match_key} has no event_uid", stage="WRITE")
    if row.team_side not in VALID_SIDES:
        raise IntegrityViolation(f"invalid team_side {row.team_side!r}", stage="WRITE")

    half = getattr(row, "half", None)
    if half is not None and half not in (1, 2):
        raise IntegrityViolation(f"invalid half {half!r}", stage="WRITE")
    minute = getattr(row, "minute", None)
    if minute is not None and minute < 0:
        raise IntegrityViolation(f"invalid minute {minute!r}", stage="WRITE")


async def write_document(session: AsyncSession, document: Document) -> Document:
    normalize_document(document)
    document.updated_at = utc_now()
    session.add(document)
    await session.flush()
    return document


async def insert_event_rows(session: AsyncSession, rows: Sequence[MatchScopedRow]) -> int:
    """Insert rows of one event table. Duplicate (match_key, event_uid) is fatal."""
    if not rows:
        return 0
    for row in rows:
        check_scoped_row(row)
        if isinstance(row, MatchPlayerStat) and row.source == DERIVED_SOURCE:
            raise IntegrityViolation(
                "DERIVED player stats can only be written by the stats rebuilder",
                stage="WRITE",
            )
    session.add_all(rows)
    try:
        await session.flush()
    except IntegrityError as e:
        raise IntegrityViolation(f"event insert rejected: {e.orig}", stage="WRITE") from e
    return len(rows)


async def delete_event_rows(session: AsyncSession, match_key: str) -> dict[str, int]:
    """Delete every normalized event of a match. Returns rows deleted per table."""
    parse_match_key(match_key)
    deleted = {}
    for table in EVENT_TABLES:
        result = await session.execute(delete(table).where(table.match_key == match_key))
        deleted[table.__tablename__] = result.rowcount or 0
    return deleted


async def replace_derived_stats(
    session: AsyncSession,
    match_key: str,
    rows: Iterable[MatchPlayerStat],
) -> tuple[int, int]:
    """Swap the DERIVED stats of a match. Only the stats rebuilder calls this.

    Non-derived rows (manual entries) for the same match are left alone.
    """
    parse_match_key(match_key)
    result = await session.execute(
        delete(MatchPlayerStat).where(
            MatchPlayerStat.match_key == match_key,
            MatchPlayerStat.source == DERIVED_SOURCE,
        )
    )
    removed = result.rowcount or 0

    rows = list(rows)
    for row in rows:
        if row.match_key != match_key:
            raise IntegrityViolation(
                f"stat row for {row.match_key} in rebuild of {match_key}", stage="WRITE"
            )
        check_scoped_row(row)
        row.source = DERIVED_SOURCE
    session.add_all(rows)
    try:
        await session.flush()
    except IntegrityError as e:
        raise IntegrityViolation(f"stats insert rejected: {e.orig}", stage="WRITE") from e
    return removed, len(rows)


def row_match_id(match_key: str, match_id: Optional[object]) -> Optional[object]:
    """match_id column value for an event row: set for PROD, always None for SANDBOX."""
    scope, backing_id = parse_match_key(match_key)
    if scope is Scope.SANDBOX:
        return None
    return match_id or backing_id
