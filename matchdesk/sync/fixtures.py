"""
Fixture sync: reconcile watched competition pages into the matches table.

Per active competition:
1. fetch the listing page (adapter)
2. fetch detail pages with bounded concurrency (failures degrade to no details)
3. build import rows, drop junk opponents, fingerprint the batch
4. unchanged fingerprint -> only touch sync_state.last_checked_at
   changed fingerprint   -> upsert on (source, source_url), update sync_state

A competition whose listing cannot be fetched is recorded and skipped; the
run ends ERROR if any competition failed.
"""

import asyncio
import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from matchdesk.config import get_settings
from matchdesk.jobs.tracking import RunKind, tracked_run
from matchdesk.models import Competition, Match, SyncState, utc_now
from matchdesk.sumula.errors import PipelineError, UpstreamError
from matchdesk.sumula.identity import normalize_text, stable_source_url
from matchdesk.sync.adapter import (
    FetchDebug,
    FixtureCandidate,
    FixtureDetails,
    FixtureSourceAdapter,
    is_target_club,
)

logger = logging.getLogger(__name__)

SYNC_SOURCE = "FPF"
SYNC_STAGES = ("SYNC_RUN", "LOAD_COMPETITIONS", "FETCH", "RECONCILE")
OPPONENT_MAX_CHARS = 60
JUNK_OPPONENT_MARKERS = ("COOKIES", "FEDERACAO PARANAENSE")
HASHED_FIELDS = (
    "source_url",
    "match_date",
    "opponent",
    "home",
    "goals_for",
    "goals_against",
    "venue",
    "kickoff_time",
    "referee",
    "home_team",
    "away_team",
)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class FixtureImportRow:
    competition_name: str
    season_year: int
    match_date: str
    opponent: str
    home: bool
    goals_for: Optional[int]
    goals_against: Optional[int]
    source_url: str
    venue: Optional[str] = None
    kickoff_time: Optional[str] = None
    referee: Optional[str] = None
    home_team: Optional[str] = None
    away_team: Optional[str] = None
    source: str = SYNC_SOURCE

    def fingerprint_fields(self) -> dict:
        return {key: getattr(self, key) for key in HASHED_FIELDS}


@dataclass
class SyncSummary:
    source: str = SYNC_SOURCE
    competitions_checked: int = 0
    competitions_unchanged: int = 0
    competitions_failed: int = 0
    matches_found: int = 0
    matches_discarded: int = 0
    matches_imported: int = 0
    details_attempted: int = 0
    details_succeeded: int = 0
    details_failed: int = 0
    matches_updated_with_score: int = 0
    debug: FetchDebug = field(default_factory=FetchDebug)
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data.update(data.pop("debug"))
        return data


async def map_with_concurrency(
    items: list[T],
    limit: int,
    worker: Callable[[T], Awaitable[R]],
) -> list[R]:
    """Run ``worker`` over items with at most ``limit`` in flight. Keeps order."""
    semaphore = asyncio.Semaphore(max(1, limit))

    async def run(item: T) -> R:
        async with semaphore:
            return await worker(item)

    return list(await asyncio.gather(*(run(item) for item in items)))


def compute_batch_hash(rows: Iterable[FixtureImportRow]) -> str:
    """Order-independent fingerprint of a competition's import rows."""
    payload = sorted((row.fingerprint_fields() for row in rows), key=lambda r: r["source_url"])
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def is_junk_opponent(opponent: str) -> bool:
    if not opponent or len(opponent) > OPPONENT_MAX_CHARS:
        return True
    normalized = normalize_text(opponent)
    return any(marker in normalized for marker in JUNK_OPPONENT_MARKERS)


def build_import_row(
    competition: Competition,
    fixture: FixtureCandidate,
    details: Optional[FixtureDetails],
    target_club: str,
) -> Optional[FixtureImportRow]:
    """Orient a fixture from the tracked club's point of view. None for junk rows."""
    details = details or FixtureDetails()
    home_team = " ".join((details.home_team or fixture.home_team).split())
    away_team = " ".join((details.away_team or fixture.away_team).split())
    club_home = is_target_club(home_team, target_club)

    goals_home = details.goals_home if details.goals_home is not None else fixture.goals_home
    goals_away = details.goals_away if details.goals_away is not None else fixture.goals_away

    opponent = away_team if club_home else home_team
    if is_junk_opponent(opponent):
        return None

    match_date_iso = fixture.match_date.isoformat()
    return FixtureImportRow(
        competition_name=competition.name,
        season_year=competition.season_year,
        match_date=match_date_iso,
        opponent=opponent,
        home=club_home,
        goals_for=goals_home if club_home else goals_away,
        goals_against=goals_away if club_home else goals_home,
        source_url=stable_source_url(
            url_base=competition.url_base,
            season_year=competition.season_year,
            match_date_iso=match_date_iso,
            home_team=home_team,
            away_team=away_team,
            details_url=fixture.details_url,
        ),
        venue=details.venue,
        kickoff_time=details.kickoff_time,
        referee=details.referee,
        home_team=home_team,
        away_team=away_team,
    )


async def upsert_fixtures(session: AsyncSession, rows: list[FixtureImportRow]) -> int:
    """Insert or update matches on (source, source_url). Returns rows written.

    Only FPF-sourced rows are touched; manual matches are never overwritten.
    """
    # Same natural key twice in one batch: last one wins
    unique = {row.source_url: row for row in rows}
    now = utc_now()

    for row in unique.values():
        result = await session.execute(
            select(Match).where(Match.source == row.source, Match.source_url == row.source_url)
        )
        match = result.scalars().first()
        values = asdict(row)
        values["match_date"] = date.fromisoformat(row.match_date)
        if match is None:
            match = Match(**values, created_at=now, updated_at=now)
        else:
            for key, value in values.items():
                setattr(match, key, value)
            match.updated_at = now
        session.add(match)

    await session.flush()
    return len(unique)


async def _fetch_details(
    adapter: FixtureSourceAdapter,
    fixtures: list[FixtureCandidate],
    concurrency: int,
    summary: SyncSummary,
) -> list[tuple[FixtureCandidate, Optional[FixtureDetails]]]:
    async def worker(fixture: FixtureCandidate):
        if not fixture.details_url:
            return fixture, None
        summary.details_attempted += 1
        try:
            details = await adapter.fetch_match_details(fixture.details_url)
        except Exception as e:
            logger.warning(f"[FIXTURE_SYNC] detail fetch failed for {fixture.details_url}: {e}")
            details = FixtureDetails()
        if details.has_any():
            summary.details_succeeded += 1
            if details.has_score():
                summary.matches_updated_with_score += 1
        else:
            summary.details_failed += 1
        return fixture, details

    return await map_with_concurrency(fixtures, concurrency, worker)


async def reconcile_competition(
    session: AsyncSession,
    competition: Competition,
    rows: list[FixtureImportRow],
    summary: SyncSummary,
) -> bool:
    """Apply one competition's rows. Returns True when anything changed."""
    batch_hash = compute_batch_hash(rows)
    state = await session.get(SyncState, competition.id)
    now = utc_now()

    if state is not None and state.last_hash == batch_hash:
        state.last_checked_at = now
        session.add(state)
        await session.commit()
        summary.competitions_unchanged += 1
        return False

    if rows:
        summary.matches_imported += await upsert_fixtures(session, rows)

    if state is None:
        state = SyncState(competition_id=competition.id)
    state.last_hash = batch_hash
    state.last_checked_at = now
    state.last_changed_at = now
    session.add(state)
    await session.commit()
    return True


async def sync_competition(
    session: AsyncSession,
    adapter: FixtureSourceAdapter,
    competition: Competition,
    summary: SyncSummary,
    *,
    target_club: str,
    concurrency: int,
    run=None,
) -> bool:
    listing = await adapter.fetch_fixtures(competition.url_base)
    summary.debug.merge(listing.debug)
    summary.matches_found += len(listing.fixtures)

    detailed = await _fetch_details(adapter, listing.fixtures, concurrency, summary)

    rows = []
    for fixture, details in detailed:
        row = build_import_row(competition, fixture, details, target_club)
        if row is None:
            summary.matches_discarded += 1
            continue
        rows.append(row)

    if run is not None:
        run.stage = "RECONCILE"
    changed = await reconcile_competition(session, competition, rows, summary)
    logger.info(
        f"[FIXTURE_SYNC] {competition.name} ({competition.season_year}): "
        f"{len(rows)} rows, {'changed' if changed else 'unchanged'}"
    )
    return changed


async def run_fixture_sync(
    *,
    session_factory,
    adapter: FixtureSourceAdapter,
    target_club: Optional[str] = None,
    concurrency: Optional[int] = None,
) -> dict:
    """Sync every active competition and record the run. Returns the summary."""
    settings = get_settings()
    target_club = target_club or settings.SYNC_TARGET_CLUB
    concurrency = concurrency or settings.SYNC_DETAIL_CONCURRENCY
    summary = SyncSummary()

    async with tracked_run(session_factory, RunKind.FIXTURE_SYNC, SYNC_STAGES) as run:
        async with session_factory() as session:
            run.stage = "LOAD_COMPETITIONS"
            result = await session.execute(
                select(Competition)
                .where(Competition.is_active == True)  # noqa: E712
                .order_by(Competition.season_year.desc())
            )
            competitions = [c for c in result.scalars().all() if c.url_base]
            # Detached copies survive the rollback of a failed competition
            for competition in competitions:
                session.expunge(competition)

            for competition in competitions:
                summary.competitions_checked += 1
                run.stage = "FETCH"
                try:
                    await sync_competition(
                        session,
                        adapter,
                        competition,
                        summary,
                        target_club=target_club,
                        concurrency=concurrency,
                        run=run,
                    )
                except UpstreamError as e:
                    await session.rollback()
                    summary.competitions_failed += 1
                    summary.errors.append({"competition": competition.name, "error": e.message})
                    logger.warning(f"[FIXTURE_SYNC] {competition.name} skipped: {e.message}")

        run.summary = summary.to_dict()
        if summary.competitions_failed:
            raise PipelineError(
                f"{summary.competitions_failed} of {summary.competitions_checked} competitions failed",
                code="FIXTURE_SYNC_PARTIAL",
                status_code=502,
                stage="FETCH",
            )

    logger.info(f"[FIXTURE_SYNC] done: {summary.to_dict()}")
    return {**summary.to_dict(), "run_id": str(run.run_id)}
