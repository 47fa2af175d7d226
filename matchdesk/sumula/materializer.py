"""
Canonical report -> normalized event rows (lineups, goals, cards, substitutions).

Ingestion replaces all events of a match in one transaction: delete the
existing rows, insert the new ones, mark the document EVENTS_SAVED. Any
failure rolls the whole thing back and the previous rows stay in place.

Malformed events are skipped and counted, they never fail the document.
"""

import logging
import math
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from matchdesk.models import (
    CANONICAL_EVENT_SOURCE,
    Document,
    MatchCard,
    MatchGoal,
    MatchLineup,
    MatchScopedRow,
    MatchSubstitution,
)
from matchdesk.sumula import writer
from matchdesk.sumula.canonical import CanonicalAthlete, CanonicalReport, load_canonical
from matchdesk.sumula.documents import mark_events_saved, require_canonical
from matchdesk.sumula.errors import PipelineError
from matchdesk.sumula.identity import derive_event_uid, normalize_name
from matchdesk.sumula.linking import NullLinker

logger = logging.getLogger(__name__)

CARD_TYPES = ("YELLOW", "RED", "SECOND_YELLOW")


# ---------------------------------------------------------------------------
# Field validation (tolerant: invalid -> None)
# ---------------------------------------------------------------------------


def parse_half(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if value in (1, "1"):
        return 1
    if value in (2, "2"):
        return 2
    return None


def parse_minute(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return math.floor(value) if value >= 0 else None
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit() and 1 <= len(text) <= 3:
            return int(text)
    return None


def parse_team_side(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    upper = value.strip().upper()
    return upper if upper in ("HOME", "AWAY") else None


def _text(value: Any) -> Optional[str]:
    return normalize_name(value) if isinstance(value, str) else None


# ---------------------------------------------------------------------------
# Row building
# ---------------------------------------------------------------------------


@dataclass
class MaterializedEvents:
    lineups: list[MatchLineup] = field(default_factory=list)
    goals: list[MatchGoal] = field(default_factory=list)
    cards: list[MatchCard] = field(default_factory=list)
    substitutions: list[MatchSubstitution] = field(default_factory=list)
    dropped: Counter = field(default_factory=Counter)

    def tables(self) -> list[list[MatchScopedRow]]:
        return [self.lineups, self.goals, self.cards, self.substitutions]

    def counts(self) -> dict:
        return {
            "lineups": len(self.lineups),
            "goals": len(self.goals),
            "cards": len(self.cards),
            "substitutions": len(self.substitutions),
        }


def _lineup_role(athlete: CanonicalAthlete, starter: bool) -> str:
    if athlete.is_goalkeeper:
        return "GK_STARTER" if starter else "GK_RESERVE"
    return "STARTER" if starter else "RESERVE"


class EventRowBuilder:
    """Builds event rows for one document."""

    def __init__(self, *, match_key: str, match_id, document_id, linker=None, club_side=None):
        self.match_key = match_key
        self.match_id = writer.row_match_id(match_key, match_id)
        self.document_id = document_id
        self.linker = linker or NullLinker()
        self.club_side = club_side
        self.result = MaterializedEvents()
        self._seen: set[tuple[str, str]] = set()

    def _common(self, team_side: str, event_uid: str) -> dict:
        return {
            "match_key": self.match_key,
            "match_id": self.match_id,
            "document_id": self.document_id,
            "team_side": team_side,
            "event_uid": event_uid,
            "source": CANONICAL_EVENT_SOURCE,
        }

    def _link(self, side: str, cbf_registry: Optional[str], name: Optional[str]):
        # Name matches only count on the tracked club's side
        if side != self.club_side:
            name = None
        if not cbf_registry and not name:
            return None
        return self.linker.resolve(cbf_registry, name)

    def _accept(self, kind: str, event_uid: str) -> bool:
        # Same uid twice in one sheet is the same event listed twice
        if (kind, event_uid) in self._seen:
            self.result.dropped["duplicate"] += 1
            return False
        self._seen.add((kind, event_uid))
        return True

    def add_lineup(self, side: str, athlete: CanonicalAthlete, starter: bool) -> None:
        name = normalize_name(athlete.name)
        if not name:
            self.result.dropped["lineup_without_name"] += 1
            return
        role = _lineup_role(athlete, starter)
        uid = derive_event_uid(
            "lineup",
            self.match_key,
            [side, role, name, athlete.shirt_number, athlete.is_captain],
        )
        if not self._accept("lineup", uid):
            return
        self.result.lineups.append(
            MatchLineup(
                **self._common(side, uid),
                athlete_id=self._link(side, athlete.cbf_registry, name),
                athlete_name_raw=name,
                cbf_registry=athlete.cbf_registry,
                shirt_number=athlete.shirt_number,
                role=role,
                is_captain=athlete.is_captain,
            )
        )

    def add_event(self, raw: Any) -> None:
        if not isinstance(raw, dict):
            self.result.dropped["not_an_object"] += 1
            return

        event_type = raw.get("type").strip().upper() if isinstance(raw.get("type"), str) else ""
        side = parse_team_side(raw.get("team_side"))
        half = parse_half(raw.get("half"))
        minute = parse_minute(raw.get("minute"))
        if side is None or half is None or minute is None:
            self.result.dropped["invalid_side_half_or_minute"] += 1
            return

        if event_type == "GOAL":
            self._add_goal(raw, side, half, minute)
        elif event_type == "CARD":
            self._add_card(raw, side, half, minute)
        elif event_type == "SUBSTITUTION":
            self._add_substitution(raw, side, half, minute)
        else:
            self.result.dropped["unknown_type"] += 1

    def _add_goal(self, raw: dict, side: str, half: int, minute: int) -> None:
        name = _text(raw.get("athlete_name"))
        kind_raw = _text(raw.get("kind"))
        kind = kind_raw.upper() if kind_raw else "GOAL"
        shirt = raw.get("shirt_number")
        shirt = shirt if isinstance(shirt, int) and not isinstance(shirt, bool) else None
        cbf = _text(raw.get("cbf_registry"))

        uid = derive_event_uid("goal", self.match_key, [side, half, minute, kind, name])
        if not self._accept("goal", uid):
            return
        self.result.goals.append(
            MatchGoal(
                **self._common(side, uid),
                athlete_id=self._link(side, cbf, name) if name else None,
                athlete_name_raw=name,
                cbf_registry=cbf,
                shirt_number=shirt,
                half=half,
                minute=minute,
                kind=kind,
            )
        )

    def _add_card(self, raw: dict, side: str, half: int, minute: int) -> None:
        card_type = _text(raw.get("card_type"))
        card_type = card_type.upper() if card_type else ""
        if card_type not in CARD_TYPES:
            self.result.dropped["invalid_card_type"] += 1
            return
        name = _text(raw.get("athlete_name"))
        reason = _text(raw.get("reason"))

        uid = derive_event_uid("card", self.match_key, [side, half, minute, card_type, name, reason])
        if not self._accept("card", uid):
            return
        self.result.cards.append(
            MatchCard(
                **self._common(side, uid),
                athlete_id=self._link(side, None, name),
                athlete_name_raw=name,
                half=half,
                minute=minute,
                card_type=card_type,
                reason=reason,
            )
        )

    def _add_substitution(self, raw: dict, side: str, half: int, minute: int) -> None:
        athlete_out = _text(raw.get("athlete_out_name"))
        athlete_in = _text(raw.get("athlete_in_name"))
        if not athlete_out or not athlete_in:
            self.result.dropped["substitution_missing_name"] += 1
            return

        uid = derive_event_uid(
            "substitution", self.match_key, [side, half, minute, athlete_out, athlete_in]
        )
        if not self._accept("substitution", uid):
            return
        self.result.substitutions.append(
            MatchSubstitution(
                **self._common(side, uid),
                half=half,
                minute=minute,
                athlete_out_id=self._link(side, None, athlete_out),
                athlete_in_id=self._link(side, None, athlete_in),
                athlete_out_name_raw=athlete_out,
                athlete_in_name_raw=athlete_in,
            )
        )


def build_event_rows(
    report: CanonicalReport,
    *,
    match_key: str,
    match_id=None,
    document_id: Optional[uuid.UUID] = None,
    linker=None,
) -> MaterializedEvents:
    """Convert a canonical report to rows. Pure: nothing is written."""
    linker = linker or NullLinker()
    meta = report.match_meta
    builder = EventRowBuilder(
        match_key=match_key,
        match_id=match_id,
        document_id=document_id,
        linker=linker,
        club_side=linker.club_side(meta.home_team, meta.away_team),
    )
    for side in ("HOME", "AWAY"):
        lineup = report.lineups[side]
        for athlete in lineup.starters:
            builder.add_lineup(side, athlete, starter=True)
        for athlete in lineup.reserves:
            builder.add_lineup(side, athlete, starter=False)
    for raw in report.events:
        builder.add_event(raw)
    return builder.result


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


@dataclass
class IngestOutcome:
    document_id: str
    match_key: str
    deleted: dict
    inserted: dict
    dropped: dict


async def materialize_document(
    session: AsyncSession,
    document: Document,
    *,
    linker=None,
) -> IngestOutcome:
    """Replace the match's events with those of ``document`` and commit.

    The caller owns error reporting; on failure the transaction is rolled
    back and a PipelineError carrying the failing stage is raised.
    """
    document_id = str(document.id)
    report = load_canonical(require_canonical(document))
    if report is None:
        raise PipelineError(
            "documents.canonical_json is missing or invalid",
            code="CANONICAL_INVALID",
            status_code=422,
            stage="LOAD_DOCUMENT",
            document_id=document_id,
        )

    events = build_event_rows(
        report,
        match_key=document.match_key,
        match_id=document.match_id,
        document_id=document.id,
        linker=linker,
    )

    stage = "DELETE_EXISTING"
    try:
        deleted = await writer.delete_event_rows(session, document.match_key)

        stage = "INSERT_EVENTS"
        for rows in events.tables():
            await writer.insert_event_rows(session, rows)

        stage = "SAVE_DOCUMENT"
        await mark_events_saved(session, document)
        await session.commit()
    except PipelineError as e:
        await session.rollback()
        e.stage = stage
        e.document_id = document_id
        raise
    except Exception as e:
        await session.rollback()
        raise PipelineError(str(e), stage=stage, document_id=document_id) from e

    logger.info(
        f"[SUMULA_INGEST] {document.match_key} document={document_id} "
        f"inserted={events.counts()} dropped={dict(events.dropped)}"
    )
    return IngestOutcome(
        document_id=document_id,
        match_key=document.match_key,
        deleted=deleted,
        inserted=events.counts(),
        dropped=dict(events.dropped),
    )
