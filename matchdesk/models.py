"""Database models using SQLModel."""

import uuid
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Text, UniqueConstraint, event
from sqlalchemy.orm import attributes
from sqlmodel import Field, SQLModel

from matchdesk.sumula.errors import IntegrityViolation

DERIVED_SOURCE = "DERIVED"
CANONICAL_EVENT_SOURCE = "FPF_SUMULA_CANONICAL"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; naive values (SQLite reads) are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Matches (production + sandbox) and reference data
# ---------------------------------------------------------------------------


class Match(SQLModel, table=True):
    """Production match for the tracked club."""

    __tablename__ = "matches"
    __table_args__ = (
        UniqueConstraint("source", "source_url", name="uq_matches_source_url"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    competition_name: str = Field(max_length=200)
    season_year: int = Field(index=True)
    match_date: date = Field(index=True)
    opponent: str = Field(max_length=120)
    home: bool = Field(description="True when the tracked club plays at home")
    goals_for: Optional[int] = Field(default=None, description="NULL if not played")
    goals_against: Optional[int] = Field(default=None, description="NULL if not played")

    source: str = Field(default="MANUAL", max_length=30, description="MANUAL or FPF")
    source_url: Optional[str] = Field(
        default=None, max_length=500, description="Stable external identity for synced rows"
    )
    venue: Optional[str] = Field(default=None, max_length=200)
    kickoff_time: Optional[str] = Field(default=None, max_length=10)
    referee: Optional[str] = Field(default=None, max_length=200)
    home_team: Optional[str] = Field(default=None, max_length=120)
    away_team: Optional[str] = Field(default=None, max_length=120)

    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


class SandboxMatch(SQLModel, table=True):
    """Test match used to exercise the pipeline without touching production data."""

    __tablename__ = "sandbox_matches"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    label: str = Field(max_length=200)
    home_team: Optional[str] = Field(default=None, max_length=120)
    away_team: Optional[str] = Field(default=None, max_length=120)
    match_date: Optional[date] = Field(default=None)
    competition: Optional[str] = Field(default=None, max_length=200)
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


class Athlete(SQLModel, table=True):
    """Registered athlete of the tracked club."""

    __tablename__ = "athletes"
    __table_args__ = (UniqueConstraint("source", "cbf_registry", name="uq_athletes_source_cbf"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    name: str = Field(max_length=120)
    nickname: Optional[str] = Field(default=None, max_length=120)
    cbf_registry: Optional[str] = Field(default=None, max_length=40, index=True)
    club_name: Optional[str] = Field(default=None, max_length=120)
    source: str = Field(default="MANUAL", max_length=30, description="MANUAL or FPF")
    habilitation_date: Optional[date] = Field(default=None, description="FPF registration date")
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


class Competition(SQLModel, table=True):
    """Registry entry for a competition page watched by the fixture sync."""

    __tablename__ = "competitions_registry"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    name: str = Field(max_length=200)
    season_year: int
    url_base: str = Field(max_length=500, description="Fixture listing page")
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


# ---------------------------------------------------------------------------
# Match-sheet documents
# ---------------------------------------------------------------------------


class Document(SQLModel, table=True):
    """Uploaded match sheet and the output of each parse stage."""

    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint("source", "doc_type", "match_key", name="uq_documents_match_key"),
        CheckConstraint(
            "(scope = 'PROD' AND match_id IS NOT NULL AND sandbox_match_id IS NULL) OR "
            "(scope = 'SANDBOX' AND sandbox_match_id IS NOT NULL AND match_id IS NULL)",
            name="ck_documents_scope_ids",
        ),
        CheckConstraint(
            "status IN ('UPLOADED', 'PARSED_RAW', 'CANONICAL', 'EVENTS_SAVED', 'ERROR')",
            name="ck_documents_status",
        ),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    source: str = Field(default="FPF", max_length=30)
    doc_type: str = Field(default="FPF_SUMULA", max_length=30)
    scope: str = Field(max_length=10, description="PROD or SANDBOX")
    match_id: Optional[uuid.UUID] = Field(default=None, foreign_key="matches.id", index=True)
    sandbox_match_id: Optional[uuid.UUID] = Field(
        default=None, foreign_key="sandbox_matches.id", index=True
    )
    match_key: str = Field(max_length=60, index=True)

    storage_bucket: str = Field(max_length=100)
    storage_path: str = Field(max_length=300)
    sha256: Optional[str] = Field(default=None, max_length=64, description="Checksum of the stored file")
    size_bytes: Optional[int] = Field(default=None)

    parser_version: str = Field(default="v1", max_length=20)
    status: str = Field(default="UPLOADED", max_length=20)
    raw_text: Optional[str] = Field(default=None, sa_column=Column(Text))
    canonical_json: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    parse_error: Optional[str] = Field(default=None, max_length=300)

    uploaded_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    parsed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    canonical_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    events_saved_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


# ---------------------------------------------------------------------------
# Normalized match events
# ---------------------------------------------------------------------------


class MatchScopedRow(SQLModel):
    """Columns shared by every row keyed on match_key."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    match_key: str = Field(max_length=60, index=True)
    event_uid: str = Field(max_length=64)
    match_id: Optional[uuid.UUID] = Field(default=None, foreign_key="matches.id", index=True)
    document_id: Optional[uuid.UUID] = Field(default=None, foreign_key="documents.id")
    team_side: str = Field(max_length=4, description="HOME or AWAY")
    source: str = Field(default=CANONICAL_EVENT_SOURCE, max_length=30)
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


class MatchLineup(MatchScopedRow, table=True):
    __tablename__ = "match_lineups"
    __table_args__ = (
        UniqueConstraint("match_key", "event_uid", name="uq_match_lineups_uid"),
        CheckConstraint("team_side IN ('HOME', 'AWAY')", name="ck_match_lineups_side"),
        CheckConstraint(
            "role IN ('STARTER', 'RESERVE', 'GK_STARTER', 'GK_RESERVE')",
            name="ck_match_lineups_role",
        ),
    )

    athlete_id: Optional[uuid.UUID] = Field(default=None, foreign_key="athletes.id")
    athlete_name_raw: str = Field(max_length=120)
    cbf_registry: Optional[str] = Field(default=None, max_length=40)
    shirt_number: Optional[int] = Field(default=None)
    role: str = Field(max_length=12)
    is_captain: bool = Field(default=False)


class MatchGoal(MatchScopedRow, table=True):
    __tablename__ = "match_goals"
    __table_args__ = (
        UniqueConstraint("match_key", "event_uid", name="uq_match_goals_uid"),
        CheckConstraint("team_side IN ('HOME', 'AWAY')", name="ck_match_goals_side"),
        CheckConstraint("half IN (1, 2)", name="ck_match_goals_half"),
        CheckConstraint("minute >= 0", name="ck_match_goals_minute"),
    )

    athlete_id: Optional[uuid.UUID] = Field(default=None, foreign_key="athletes.id")
    athlete_name_raw: Optional[str] = Field(default=None, max_length=120)
    cbf_registry: Optional[str] = Field(default=None, max_length=40)
    shirt_number: Optional[int] = Field(default=None)
    half: int
    minute: int
    kind: str = Field(default="GOAL", max_length=20, description="GOAL, PENALTY, OWN_GOAL or ASSIST")


class MatchCard(MatchScopedRow, table=True):
    __tablename__ = "match_cards"
    __table_args__ = (
        UniqueConstraint("match_key", "event_uid", name="uq_match_cards_uid"),
        CheckConstraint("team_side IN ('HOME', 'AWAY')", name="ck_match_cards_side"),
        CheckConstraint("half IN (1, 2)", name="ck_match_cards_half"),
        CheckConstraint("minute >= 0", name="ck_match_cards_minute"),
        CheckConstraint(
            "card_type IN ('YELLOW', 'RED', 'SECOND_YELLOW')", name="ck_match_cards_type"
        ),
    )

    athlete_id: Optional[uuid.UUID] = Field(default=None, foreign_key="athletes.id")
    athlete_name_raw: Optional[str] = Field(default=None, max_length=120)
    cbf_registry: Optional[str] = Field(default=None, max_length=40)
    half: int
    minute: int
    card_type: str = Field(max_length=15)
    reason: Optional[str] = Field(default=None, max_length=200)


class MatchSubstitution(MatchScopedRow, table=True):
    __tablename__ = "match_substitutions"
    __table_args__ = (
        UniqueConstraint("match_key", "event_uid", name="uq_match_substitutions_uid"),
        CheckConstraint("team_side IN ('HOME', 'AWAY')", name="ck_match_substitutions_side"),
        CheckConstraint("half IN (1, 2)", name="ck_match_substitutions_half"),
        CheckConstraint("minute >= 0", name="ck_match_substitutions_minute"),
    )

    half: int
    minute: int
    athlete_out_id: Optional[uuid.UUID] = Field(default=None, foreign_key="athletes.id")
    athlete_in_id: Optional[uuid.UUID] = Field(default=None, foreign_key="athletes.id")
    athlete_out_name_raw: str = Field(max_length=120)
    athlete_in_name_raw: str = Field(max_length=120)


class MatchPlayerStat(MatchScopedRow, table=True):
    """Per-player aggregate for one match. DERIVED rows belong to the rebuilder."""

    __tablename__ = "match_player_stats"
    __table_args__ = (
        UniqueConstraint("match_key", "event_uid", name="uq_match_player_stats_uid"),
        CheckConstraint("team_side IN ('HOME', 'AWAY')", name="ck_match_player_stats_side"),
        CheckConstraint("minutes_played >= 0", name="ck_match_player_stats_minutes"),
    )

    athlete_id: Optional[uuid.UUID] = Field(default=None, foreign_key="athletes.id")
    athlete_name_raw: Optional[str] = Field(default=None, max_length=120)
    cbf_registry: Optional[str] = Field(default=None, max_length=40)
    minutes_played: int = Field(default=0)
    goals: int = Field(default=0)
    assists: int = Field(default=0)
    yellow_cards: int = Field(default=0)
    red_cards: int = Field(default=0)
    started: bool = Field(default=False)
    is_captain: bool = Field(default=False)
    participated: bool = Field(default=False)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


@event.listens_for(MatchPlayerStat, "before_update")
def _block_derived_stat_updates(mapper, connection, target) -> None:
    """DERIVED rows are replaced by the rebuilder, never edited in place."""
    history = attributes.get_history(target, "source")
    previous = history.deleted[0] if history.deleted else target.source
    if previous == DERIVED_SOURCE:
        raise IntegrityViolation(
            f"match_player_stats row {target.id} is DERIVED and cannot be updated",
            stage="WRITE",
        )


@event.listens_for(MatchPlayerStat, "before_delete")
def _block_derived_stat_deletes(mapper, connection, target) -> None:
    if target.source == DERIVED_SOURCE:
        raise IntegrityViolation(
            f"match_player_stats row {target.id} is DERIVED and can only be replaced by a rebuild",
            stage="WRITE",
        )


# ---------------------------------------------------------------------------
# Fixture sync state and run ledger
# ---------------------------------------------------------------------------


class SyncState(SQLModel, table=True):
    """Last observed fingerprint of a competition's fixture listing."""

    __tablename__ = "sync_state"

    competition_id: uuid.UUID = Field(foreign_key="competitions_registry.id", primary_key=True)
    last_hash: Optional[str] = Field(default=None, max_length=64)
    last_checked_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    last_changed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))


class SyncRun(SQLModel, table=True):
    """One invocation of a pipeline stage, the fixture sync or the roster sync."""

    __tablename__ = "sync_runs"
    __table_args__ = (
        CheckConstraint(
            "kind IN ('SUMULA_PARSE', 'SUMULA_INGEST', 'SUMULA_STATS_REBUILD', 'FIXTURE_SYNC', 'ROSTER_SYNC')",
            name="ck_sync_runs_kind",
        ),
        CheckConstraint("status IN ('RUNNING', 'DONE', 'ERROR')", name="ck_sync_runs_status"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    kind: str = Field(max_length=30, index=True)
    status: str = Field(default="RUNNING", max_length=10, index=True)
    started_at: datetime = Field(default_factory=utc_now, index=True, sa_type=DateTime(timezone=True))
    finished_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    summary_json: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    error_text: Optional[str] = Field(default=None, max_length=300)
