"""Tests for canonical report -> event rows."""

import uuid

import pytest
from sqlmodel import select

from matchdesk.models import Document, MatchCard, MatchGoal, MatchLineup, MatchSubstitution
from matchdesk.sumula import documents
from matchdesk.sumula.canonical import CanonicalAthlete, CanonicalReport, TeamLineup
from matchdesk.sumula.errors import PipelineError
from matchdesk.sumula.identity import Scope
from matchdesk.sumula.linking import AthleteLinker
from matchdesk.sumula.materializer import (
    build_event_rows,
    materialize_document,
    parse_half,
    parse_minute,
    parse_team_side,
)
from matchdesk.sumula.parser import parse_to_canonical
from matchdesk.sumula.stats import compute_player_stats

pytestmark = pytest.mark.anyio

SANDBOX_KEY = f"SANDBOX:{uuid.UUID('7d3c1b2a-9e8f-4a6b-8c5d-2e1f0a9b8c7d')}"
EVENT_MODELS = (MatchLineup, MatchGoal, MatchCard, MatchSubstitution)


async def _canonical_document(session, match_id, text) -> Document:
    document, _ = await documents.register_upload(
        session,
        scope=Scope.PROD,
        backing_id=match_id,
        storage_bucket="match-reports",
        storage_path="x.pdf",
        sha256="0" * 64,
        size_bytes=10,
    )
    await documents.mark_parsed_raw(session, document, text)
    await documents.mark_canonical(session, document, parse_to_canonical(text))
    await session.commit()
    return document


async def _uids(session, table, match_key):
    result = await session.execute(select(table.event_uid).where(table.match_key == match_key))
    return sorted(row[0] for row in result.all())


class TestFieldParsing:
    """Tolerant field validation."""

    def test_half(self):
        assert parse_half(1) == 1
        assert parse_half("2") == 2
        assert parse_half(3) is None
        assert parse_half(True) is None

    def test_minute(self):
        assert parse_minute(23) == 23
        assert parse_minute(45.7) == 45
        assert parse_minute("07") == 7
        assert parse_minute(-1) is None
        assert parse_minute("1234") is None
        assert parse_minute(float("nan")) is None

    def test_team_side(self):
        assert parse_team_side(" home ") == "HOME"
        assert parse_team_side("visitor") is None
        assert parse_team_side(None) is None


class TestBuildEventRows:
    """Pure row building."""

    def test_sample_counts(self, sample_sumula):
        events = build_event_rows(parse_to_canonical(sample_sumula), match_key=SANDBOX_KEY)
        assert events.counts() == {"lineups": 7, "goals": 3, "cards": 3, "substitutions": 1}
        assert not events.dropped

    def test_goalkeeper_roles(self, sample_sumula):
        events = build_event_rows(parse_to_canonical(sample_sumula), match_key=SANDBOX_KEY)
        roles = {row.athlete_name_raw: row.role for row in events.lineups}
        assert roles["JOAO SILVA"] == "GK_STARTER"
        assert roles["CARLOS SOUZA"] == "STARTER"
        assert roles["LUCAS ROCHA"] == "RESERVE"

    def test_sandbox_rows_never_carry_match_id(self, sample_sumula):
        events = build_event_rows(
            parse_to_canonical(sample_sumula), match_key=SANDBOX_KEY, match_id=uuid.uuid4()
        )
        assert all(row.match_id is None for rows in events.tables() for row in rows)

    def test_malformed_events_are_dropped(self):
        report = CanonicalReport(
            events=[
                "not a dict",
                {"type": "GOAL", "team_side": "HOME", "half": 3, "minute": 10},
                {"type": "CARD", "team_side": "AWAY", "half": 1, "minute": 5, "card_type": "BLUE"},
                {"type": "SUBSTITUTION", "team_side": "HOME", "half": 2, "minute": 5},
                {"type": "PENALTY_SHOOTOUT", "team_side": "HOME", "half": 2, "minute": 5},
                {"type": "GOAL", "team_side": "HOME", "half": 1, "minute": 10, "athlete_name": "A"},
            ]
        )
        events = build_event_rows(report, match_key=SANDBOX_KEY)
        assert events.counts()["goals"] == 1
        assert events.dropped == {
            "not_an_object": 1,
            "invalid_side_half_or_minute": 1,
            "invalid_card_type": 1,
            "substitution_missing_name": 1,
            "unknown_type": 1,
        }

    def test_duplicate_events_in_one_sheet(self):
        goal = {"type": "GOAL", "team_side": "HOME", "half": 1, "minute": 10, "athlete_name": "A"}
        report = CanonicalReport(
            lineups={
                "HOME": TeamLineup(starters=[CanonicalAthlete(name="A"), CanonicalAthlete(name="A")]),
                "AWAY": TeamLineup(),
            },
            events=[goal, dict(goal)],
        )
        events = build_event_rows(report, match_key=SANDBOX_KEY)
        assert events.counts()["goals"] == 1
        assert events.counts()["lineups"] == 1
        assert events.dropped["duplicate"] == 2

    async def test_linker_resolution(self, sample_sumula, club_athletes):
        joao, carlos = club_athletes
        linker = AthleteLinker(club_athletes, club_name="Galo Maringá")
        events = build_event_rows(
            parse_to_canonical(sample_sumula), match_key=SANDBOX_KEY, linker=linker
        )
        ids = {row.athlete_name_raw: row.athlete_id for row in events.lineups}
        assert ids["JOAO SILVA"] == joao.id
        assert ids["CARLOS SOUZA"] == carlos.id
        assert ids["PEDRO LIMA"] is None
        scorer = next(g for g in events.goals if g.athlete_name_raw == "CARLOS SOUZA")
        assert scorer.athlete_id == carlos.id

    async def test_opponent_namesake_stays_unlinked(self, sample_sumula, club_athletes):
        joao, _ = club_athletes
        text = sample_sumula.replace("ANDRE COSTA", "JOAO SILVA")
        linker = AthleteLinker(club_athletes, club_name="Galo Maringá")
        events = build_event_rows(parse_to_canonical(text), match_key=SANDBOX_KEY, linker=linker)

        home = next(r for r in events.lineups if r.team_side == "HOME" and r.athlete_name_raw == "JOAO SILVA")
        away = next(r for r in events.lineups if r.team_side == "AWAY" and r.athlete_name_raw == "JOAO SILVA")
        assert home.athlete_id == joao.id
        assert away.athlete_id is None
        away_goal = next(g for g in events.goals if g.team_side == "AWAY")
        assert away_goal.athlete_name_raw == "JOAO SILVA"
        assert away_goal.athlete_id is None
        assert all(c.athlete_id is None for c in events.cards if c.team_side == "AWAY")

        players = {
            p.team_side: p
            for p in compute_player_stats(events.lineups, events.goals, events.cards, events.substitutions)
            if p.athlete_name_raw == "JOAO SILVA"
        }
        assert players["HOME"].athlete_id == joao.id
        assert players["HOME"].goals == 0
        assert players["AWAY"].athlete_id is None
        assert players["AWAY"].goals == 1

    async def test_no_name_linking_when_club_not_playing(self, sample_sumula, club_athletes):
        text = sample_sumula.replace("Galo Maringá", "Londrina")
        linker = AthleteLinker(club_athletes, club_name="Galo Maringá")
        events = build_event_rows(parse_to_canonical(text), match_key=SANDBOX_KEY, linker=linker)
        ids = {row.athlete_name_raw: row.athlete_id for row in events.lineups}
        # CBF registry still links; name-only matches do not
        assert ids["JOAO SILVA"] == club_athletes[0].id
        assert ids["CARLOS SOUZA"] is None


class TestMaterializeDocument:
    """Delete + insert in one transaction."""

    async def test_ingest_is_idempotent(self, session, prod_match, sample_sumula):
        document = await _canonical_document(session, prod_match.id, sample_sumula)
        key = document.match_key

        first = await materialize_document(session, document)
        uids_first = [await _uids(session, t, key) for t in EVENT_MODELS]

        second = await materialize_document(session, document)
        uids_second = [await _uids(session, t, key) for t in EVENT_MODELS]

        assert first.inserted == second.inserted
        assert uids_first == uids_second
        assert second.deleted == {
            "match_lineups": 7,
            "match_goals": 3,
            "match_cards": 3,
            "match_substitutions": 1,
        }
        assert document.status == "EVENTS_SAVED"

    async def test_prod_rows_reference_match(self, session, prod_match, sample_sumula):
        document = await _canonical_document(session, prod_match.id, sample_sumula)
        await materialize_document(session, document)

        result = await session.execute(select(MatchGoal).where(MatchGoal.match_key == document.match_key))
        goals = result.scalars().all()
        assert goals
        assert all(goal.match_id == prod_match.id for goal in goals)
        assert all(goal.document_id == document.id for goal in goals)

    async def test_invalid_canonical(self, session, prod_match, sample_sumula):
        document = await _canonical_document(session, prod_match.id, sample_sumula)
        document.canonical_json = {"lineups": "broken"}

        with pytest.raises(PipelineError) as exc:
            await materialize_document(session, document)
        assert exc.value.code == "CANONICAL_INVALID"
        assert exc.value.stage == "LOAD_DOCUMENT"
