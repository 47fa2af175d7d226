"""
Per-player match statistics derived from normalized events.

The rebuild is a pure function of the event rows of one match: running it
twice over the same events produces the same rows. Existing DERIVED rows
are replaced inside a single transaction.

Minutes played (regulation time only, no stoppage):
    match minute = min(120, (45 if half == 2 else 0) + minute)
    entry        = 0 if started, else first sub-in minute
                   (0 if neither but the player was subbed out)
    exit         = min(90, first sub-out minute), else 90
    minutes      = max(0, exit - entry), 0 when there is no entry
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlmodel import select
from sqlalchemy.ext.asyncio import AsyncSession

from matchdesk.models import (
    DERIVED_SOURCE,
    MatchCard,
    MatchGoal,
    MatchLineup,
    MatchPlayerStat,
    MatchSubstitution,
    utc_now,
)
from matchdesk.sumula import writer
from matchdesk.sumula.errors import PipelineError
from matchdesk.sumula.identity import derive_event_uid, normalize_name, player_identity_key

logger = logging.getLogger(__name__)

REGULATION_MINUTES = 90
MAX_MATCH_MINUTE = 120
STARTING_ROLES = ("STARTER", "GK_STARTER")


def to_match_minute(half: int, minute: int) -> int:
    offset = 45 if half == 2 else 0
    return min(MAX_MATCH_MINUTE, offset + max(0, minute))


@dataclass
class PlayerAccumulator:
    key: str
    team_side: str
    athlete_id: Optional[object] = None
    athlete_name_raw: Optional[str] = None
    cbf_registry: Optional[str] = None
    started: bool = False
    is_captain: bool = False
    participated: bool = False
    goals: int = 0
    assists: int = 0
    yellow_cards: int = 0
    red_cards: int = 0
    sub_in_minutes: list[int] = field(default_factory=list)
    sub_out_minutes: list[int] = field(default_factory=list)

    @property
    def minutes_played(self) -> int:
        first_in = min(self.sub_in_minutes) if self.sub_in_minutes else None
        first_out = min(self.sub_out_minutes) if self.sub_out_minutes else None

        entry = 0 if self.started else first_in
        if entry is None and first_out is not None:
            entry = 0
        if entry is None:
            return 0

        exit_minute = min(REGULATION_MINUTES, first_out) if first_out is not None else REGULATION_MINUTES
        return max(0, exit_minute - entry)


class PlayerTable:
    """Accumulators keyed by player identity."""

    def __init__(self):
        self.players: dict[str, PlayerAccumulator] = {}

    def ensure(
        self,
        team_side: str,
        athlete_id,
        athlete_name_raw: Optional[str],
        cbf_registry: Optional[str] = None,
    ) -> Optional[PlayerAccumulator]:
        key = player_identity_key(team_side, athlete_id, athlete_name_raw)
        if key is None:
            return None

        player = self.players.get(key)
        if player is None:
            player = PlayerAccumulator(
                key=key,
                team_side=team_side,
                athlete_id=athlete_id,
                athlete_name_raw=normalize_name(athlete_name_raw),
                cbf_registry=(cbf_registry or "").strip() or None,
            )
            self.players[key] = player
        else:
            player.athlete_name_raw = player.athlete_name_raw or normalize_name(athlete_name_raw)
            player.cbf_registry = player.cbf_registry or (cbf_registry or "").strip() or None
        return player


def compute_player_stats(
    lineups: Iterable[MatchLineup],
    goals: Iterable[MatchGoal],
    cards: Iterable[MatchCard],
    substitutions: Iterable[MatchSubstitution],
) -> list[PlayerAccumulator]:
    table = PlayerTable()

    for lineup in lineups:
        player = table.ensure(
            lineup.team_side, lineup.athlete_id, lineup.athlete_name_raw, lineup.cbf_registry
        )
        if player is None:
            continue
        player.started = player.started or lineup.role.upper() in STARTING_ROLES
        player.is_captain = player.is_captain or bool(lineup.is_captain)
        player.participated = True

    for goal in goals:
        player = table.ensure(goal.team_side, goal.athlete_id, goal.athlete_name_raw, goal.cbf_registry)
        if player is None:
            continue
        if (goal.kind or "GOAL").upper() == "ASSIST":
            player.assists += 1
        else:
            player.goals += 1
        player.participated = True

    for card in cards:
        player = table.ensure(card.team_side, card.athlete_id, card.athlete_name_raw)
        if player is None:
            continue
        if card.card_type == "YELLOW":
            player.yellow_cards += 1
        elif card.card_type == "RED":
            player.red_cards += 1
        elif card.card_type == "SECOND_YELLOW":
            player.yellow_cards += 1
            player.red_cards += 1
        player.participated = True

    for sub in substitutions:
        minute = to_match_minute(sub.half, sub.minute)
        player_out = table.ensure(sub.team_side, sub.athlete_out_id, sub.athlete_out_name_raw)
        if player_out is not None:
            player_out.sub_out_minutes.append(minute)
            player_out.participated = True
        player_in = table.ensure(sub.team_side, sub.athlete_in_id, sub.athlete_in_name_raw)
        if player_in is not None:
            player_in.sub_in_minutes.append(minute)
            player_in.participated = True

    return list(table.players.values())


def to_stat_rows(
    players: Iterable[PlayerAccumulator],
    *,
    match_key: str,
    match_id=None,
    document_id=None,
) -> list[MatchPlayerStat]:
    now = utc_now()
    rows = []
    for player in players:
        rows.append(
            MatchPlayerStat(
                match_key=match_key,
                match_id=writer.row_match_id(match_key, match_id),
                document_id=document_id,
                event_uid=derive_event_uid(
                    "player_stats",
                    match_key,
                    [player.team_side, player.athlete_id, player.athlete_name_raw],
                ),
                team_side=player.team_side,
                athlete_id=player.athlete_id,
                athlete_name_raw=player.athlete_name_raw,
                cbf_registry=player.cbf_registry,
                minutes_played=player.minutes_played,
                goals=player.goals,
                assists=player.assists,
                yellow_cards=player.yellow_cards,
                red_cards=player.red_cards,
                started=player.started,
                is_captain=player.is_captain,
                participated=player.participated,
                source=DERIVED_SOURCE,
                updated_at=now,
            )
        )
    return rows


@dataclass
class RebuildResult:
    match_key: str
    document_id: Optional[str]
    match_id: Optional[str]
    deleted_rows: int
    inserted_rows: int

    def to_dict(self) -> dict:
        return {
            "match_key": self.match_key,
            "document_id": self.document_id,
            "match_id": self.match_id,
            "deleted_rows": self.deleted_rows,
            "inserted_rows": self.inserted_rows,
        }


async def _load_events(session: AsyncSession, table, match_key: str) -> list:
    result = await session.execute(select(table).where(table.match_key == match_key))
    return list(result.scalars().all())


async def rebuild_player_stats(
    session: AsyncSession,
    *,
    match_key: str,
    document_id=None,
    match_id=None,
) -> RebuildResult:
    """Recompute and replace the DERIVED stats of one match, then commit."""
    try:
        lineups = await _load_events(session, MatchLineup, match_key)
        goals = await _load_events(session, MatchGoal, match_key)
        cards = await _load_events(session, MatchCard, match_key)
        substitutions = await _load_events(session, MatchSubstitution, match_key)

        players = compute_player_stats(lineups, goals, cards, substitutions)
        rows = to_stat_rows(
            players, match_key=match_key, match_id=match_id, document_id=document_id
        )
        deleted, inserted = await writer.replace_derived_stats(session, match_key, rows)
        await session.commit()
    except PipelineError as e:
        await session.rollback()
        e.stage = "REBUILD"
        raise
    except Exception as e:
        await session.rollback()
        raise PipelineError(f"stats rebuild failed: {e}", stage="REBUILD") from e

    logger.info(f"[STATS_REBUILD] {match_key}: deleted={deleted} inserted={inserted}")
    return RebuildResult(
        match_key=match_key,
        document_id=str(document_id) if document_id else None,
        match_id=str(match_id) if match_id else None,
        deleted_rows=deleted,
        inserted_rows=inserted,
    )
