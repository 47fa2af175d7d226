"""
Roster sync: import the tracked club's registered athletes.

Per active competition, the roster page (``<url_base>/atletas-habilitados``)
is scraped and each athlete is upserted on (source, cbf_registry). These
FPF rows are what the match-sheet linker resolves CBF registry numbers
against. Manual athletes are never touched.

A competition whose roster cannot be fetched is recorded and skipped; the
run ends ERROR if any competition failed.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from matchdesk.config import get_settings
from matchdesk.jobs.tracking import RunKind, tracked_run
from matchdesk.models import Athlete, Competition, utc_now
from matchdesk.sumula.errors import PipelineError, UpstreamError
from matchdesk.sync.adapter import RosterAthlete, RosterDebug, RosterSourceAdapter, roster_url

logger = logging.getLogger(__name__)

ROSTER_SOURCE = "FPF"
ROSTER_STAGES = ("SYNC_RUN", "LOAD_COMPETITIONS", "FETCH", "RECONCILE")


@dataclass
class RosterSummary:
    source: str = "FPF_ROSTER"
    competitions_checked: int = 0
    competitions_failed: int = 0
    imported: int = 0
    updated: int = 0
    unchanged: int = 0
    debug: RosterDebug = field(default_factory=RosterDebug)
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data.update(data.pop("debug"))
        return data


async def upsert_roster(
    session: AsyncSession,
    athletes: list[RosterAthlete],
    club_name: str,
    summary: RosterSummary,
) -> None:
    """Insert or update FPF athletes on (source, cbf_registry)."""
    if not athletes:
        return
    result = await session.execute(
        select(Athlete).where(
            Athlete.source == ROSTER_SOURCE,
            Athlete.cbf_registry.in_([athlete.cbf_registry for athlete in athletes]),
        )
    )
    existing = {row.cbf_registry: row for row in result.scalars().all()}
    now = utc_now()

    for athlete in athletes:
        values = {"name": athlete.name, "nickname": athlete.nickname, "club_name": club_name}
        # A page without the date keeps the one already stored
        if athlete.habilitation_date is not None:
            values["habilitation_date"] = athlete.habilitation_date

        row = existing.get(athlete.cbf_registry)
        if row is None:
            row = Athlete(
                source=ROSTER_SOURCE,
                cbf_registry=athlete.cbf_registry,
                created_at=now,
                updated_at=now,
                **values,
            )
            existing[athlete.cbf_registry] = row
            summary.imported += 1
        elif any(getattr(row, key) != value for key, value in values.items()):
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = now
            summary.updated += 1
        else:
            summary.unchanged += 1
            continue
        session.add(row)

    await session.flush()


async def run_roster_sync(
    *,
    session_factory,
    adapter: RosterSourceAdapter,
    club_name: Optional[str] = None,
) -> dict:
    """Import the roster of every active competition and record the run."""
    club_name = club_name or get_settings().ATHLETE_CLUB_NAME
    summary = RosterSummary()

    async with tracked_run(session_factory, RunKind.ROSTER_SYNC, ROSTER_STAGES) as run:
        async with session_factory() as session:
            run.stage = "LOAD_COMPETITIONS"
            result = await session.execute(
                select(Competition)
                .where(Competition.is_active == True)  # noqa: E712
                .order_by(Competition.season_year.desc())
            )
            competitions = [c for c in result.scalars().all() if c.url_base]
            for competition in competitions:
                session.expunge(competition)

            for competition in competitions:
                summary.competitions_checked += 1
                run.stage = "FETCH"
                try:
                    roster = await adapter.fetch_roster(roster_url(competition.url_base))
                except UpstreamError as e:
                    summary.competitions_failed += 1
                    summary.errors.append({"competition": competition.name, "error": e.message})
                    logger.warning(f"[ROSTER_SYNC] {competition.name} skipped: {e.message}")
                    continue
                summary.debug.merge(roster.debug)

                run.stage = "RECONCILE"
                await upsert_roster(session, roster.athletes, club_name, summary)
                await session.commit()
                logger.info(
                    f"[ROSTER_SYNC] {competition.name} ({competition.season_year}): "
                    f"{len(roster.athletes)} athletes"
                )

        run.summary = summary.to_dict()
        if summary.competitions_failed:
            raise PipelineError(
                f"{summary.competitions_failed} of {summary.competitions_checked} competitions failed",
                code="ROSTER_SYNC_PARTIAL",
                status_code=502,
                stage="FETCH",
            )

    logger.info(f"[ROSTER_SYNC] done: {summary.to_dict()}")
    return {**summary.to_dict(), "run_id": str(run.run_id)}
