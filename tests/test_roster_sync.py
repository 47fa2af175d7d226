"""Tests for the athlete roster sync job."""

from datetime import date

import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from matchdesk.jobs.tracking import RunKind, RunStatus, get_recent_runs
from matchdesk.models import Athlete, Competition
from matchdesk.sumula.errors import PipelineError, UpstreamError
from matchdesk.sumula.linking import AthleteLinker
from matchdesk.sync.adapter import RosterAthlete, RosterDebug, RosterFetchResult, RosterSourceAdapter
from matchdesk.sync.roster import run_roster_sync

pytestmark = pytest.mark.anyio

PARANAENSE = "https://fpf.example/campeonato/paranaense-2024"
COPA = "https://fpf.example/campeonato/copa-2024"
CLUB = "Galo Maringá"


class FakeRosterAdapter(RosterSourceAdapter):
    """Serves canned rosters keyed by roster URL; URLs in ``failing`` raise."""

    name = "FAKE"

    def __init__(self, rosters, failing=()):
        self.rosters = rosters
        self.failing = set(failing)
        self.calls = []

    async def fetch_roster(self, url):
        self.calls.append(url)
        if url in self.failing:
            raise UpstreamError(f"FPF roster request failed (http_503) for {url}", stage="FETCH")
        athletes = list(self.rosters.get(url, []))
        return RosterFetchResult(
            athletes=athletes, debug=RosterDebug(rows_total=len(athletes), club_rows=len(athletes))
        )


def _roster(*athletes):
    return [
        RosterAthlete(cbf_registry=cbf, name=name, nickname=nickname, habilitation_date=date(2024, 1, 10))
        for cbf, name, nickname in athletes
    ]


async def _add_competitions(session_factory, *urls):
    async with session_factory() as session:
        session.add_all(
            [Competition(name=f"Competição {i}", season_year=2024, url_base=url) for i, url in enumerate(urls)]
        )
        await session.commit()


async def _athletes(session_factory, source="FPF"):
    async with session_factory() as session:
        result = await session.execute(select(Athlete).where(Athlete.source == source))
        return {row.cbf_registry: row for row in result.scalars().all()}


class TestRunRosterSync:
    """Upsert on (source, cbf_registry) with ledger counters."""

    async def test_first_sync_imports(self, session_factory):
        await _add_competitions(session_factory, PARANAENSE)
        adapter = FakeRosterAdapter(
            {f"{PARANAENSE}/atletas-habilitados": _roster(("100001", "João Silva", "Joãozinho"), ("100010", "Carlos Souza", ""))}
        )

        summary = await run_roster_sync(session_factory=session_factory, adapter=adapter, club_name=CLUB)
        assert summary["imported"] == 2
        assert summary["updated"] == 0
        assert summary["rows_total"] == 2
        assert adapter.calls == [f"{PARANAENSE}/atletas-habilitados"]

        stored = await _athletes(session_factory)
        assert stored["100001"].name == "João Silva"
        assert stored["100001"].nickname == "Joãozinho"
        assert stored["100001"].club_name == CLUB
        assert stored["100001"].habilitation_date == date(2024, 1, 10)
        assert stored["100010"].nickname is None

        async with session_factory() as session:
            (run,) = await get_recent_runs(session, kind=RunKind.ROSTER_SYNC)
        assert run.status == RunStatus.DONE.value
        assert run.summary_json["imported"] == 2

    async def test_rerun_updates_in_place(self, session_factory):
        await _add_competitions(session_factory, PARANAENSE)
        url = f"{PARANAENSE}/atletas-habilitados"
        await run_roster_sync(
            session_factory=session_factory,
            adapter=FakeRosterAdapter({url: _roster(("100001", "João Silva", ""), ("100010", "Carlos Souza", ""))}),
            club_name=CLUB,
        )
        before = await _athletes(session_factory)

        summary = await run_roster_sync(
            session_factory=session_factory,
            adapter=FakeRosterAdapter({url: _roster(("100001", "João da Silva", ""), ("100010", "Carlos Souza", ""))}),
            club_name=CLUB,
        )
        assert (summary["imported"], summary["updated"], summary["unchanged"]) == (0, 1, 1)

        after = await _athletes(session_factory)
        assert len(after) == 2
        assert after["100001"].id == before["100001"].id
        assert after["100001"].name == "João da Silva"

    async def test_manual_athletes_untouched(self, session_factory):
        async with session_factory() as session:
            session.add(Athlete(name="Manual Entry", cbf_registry="100001", club_name=CLUB, source="MANUAL"))
            await session.commit()
        await _add_competitions(session_factory, PARANAENSE)

        await run_roster_sync(
            session_factory=session_factory,
            adapter=FakeRosterAdapter({f"{PARANAENSE}/atletas-habilitados": _roster(("100001", "João Silva", ""))}),
            club_name=CLUB,
        )

        manual = await _athletes(session_factory, source="MANUAL")
        assert manual["100001"].name == "Manual Entry"
        assert (await _athletes(session_factory))["100001"].name == "João Silva"

    async def test_failed_competition_does_not_block_others(self, session_factory):
        await _add_competitions(session_factory, PARANAENSE, COPA)
        adapter = FakeRosterAdapter(
            {f"{PARANAENSE}/atletas-habilitados": _roster(("100001", "João Silva", ""))},
            failing=[f"{COPA}/atletas-habilitados"],
        )

        with pytest.raises(PipelineError) as exc:
            await run_roster_sync(session_factory=session_factory, adapter=adapter, club_name=CLUB)
        assert exc.value.code == "ROSTER_SYNC_PARTIAL"
        assert exc.value.stage == "FETCH"

        assert set(await _athletes(session_factory)) == {"100001"}
        async with session_factory() as session:
            (run,) = await get_recent_runs(session, kind=RunKind.ROSTER_SYNC)
        assert run.status == RunStatus.ERROR.value
        assert run.summary_json["competitions_failed"] == 1
        assert run.summary_json["imported"] == 1

    async def test_synced_registry_feeds_linker(self, session_factory):
        await _add_competitions(session_factory, PARANAENSE)
        await run_roster_sync(
            session_factory=session_factory,
            adapter=FakeRosterAdapter({f"{PARANAENSE}/atletas-habilitados": _roster(("100001", "João Silva", ""))}),
            club_name=CLUB,
        )
        stored = await _athletes(session_factory)

        async with session_factory() as session:
            linker = await AthleteLinker.load(session, club_name=CLUB)
        assert linker.resolve("100001") == stored["100001"].id
        assert linker.resolve(None, "JOAO SILVA") == stored["100001"].id


class TestAthleteRegistryConstraint:
    """One FPF athlete per CBF registry."""

    async def test_duplicate_fpf_registry_rejected(self, session):
        session.add(Athlete(name="A", cbf_registry="100001", source="FPF"))
        await session.commit()
        session.add(Athlete(name="B", cbf_registry="100001", source="FPF"))
        with pytest.raises(IntegrityError):
            await session.commit()
        await session.rollback()
