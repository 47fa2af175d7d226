"""Tests for derived per-player statistics."""

import uuid
from unittest.mock import patch

import pytest
from sqlmodel import select

from matchdesk.models import (
    DERIVED_SOURCE,
    MatchCard,
    MatchGoal,
    MatchLineup,
    MatchPlayerStat,
    MatchSubstitution,
)
from matchdesk.sumula.errors import PipelineError
from matchdesk.sumula.stats import (
    compute_player_stats,
    rebuild_player_stats,
    to_match_minute,
    to_stat_rows,
)

pytestmark = pytest.mark.anyio

KEY = f"SANDBOX:{uuid.UUID('7d3c1b2a-9e8f-4a6b-8c5d-2e1f0a9b8c7d')}"


def lineup(name, role="STARTER", side="HOME", **kw):
    return MatchLineup(
        match_key=KEY, event_uid=f"l-{name}", team_side=side, athlete_name_raw=name, role=role, **kw
    )


def sub(out_name, in_name, half, minute, side="HOME"):
    return MatchSubstitution(
        match_key=KEY,
        event_uid=f"s-{out_name}-{in_name}",
        team_side=side,
        half=half,
        minute=minute,
        athlete_out_name_raw=out_name,
        athlete_in_name_raw=in_name,
    )


def card(name, card_type, half=2, minute=30, side="HOME"):
    return MatchCard(
        match_key=KEY,
        event_uid=f"c-{name}-{card_type}-{minute}",
        team_side=side,
        athlete_name_raw=name,
        half=half,
        minute=minute,
        card_type=card_type,
    )


def goal(name, kind="GOAL", side="HOME", **kw):
    return MatchGoal(
        match_key=KEY,
        event_uid=f"g-{name}-{kind}",
        team_side=side,
        athlete_name_raw=name,
        half=1,
        minute=10,
        kind=kind,
        **kw,
    )


def by_name(players):
    return {p.athlete_name_raw: p for p in players}


class TestMatchMinute:
    """Half/minute -> match minute."""

    def test_first_half(self):
        assert to_match_minute(1, 30) == 30

    def test_second_half_offset(self):
        assert to_match_minute(2, 10) == 55

    def test_capped(self):
        assert to_match_minute(2, 200) == 120


class TestMinutesPlayed:
    """Minutes from lineup role and substitutions."""

    def test_full_match_starter(self):
        players = by_name(compute_player_stats([lineup("A")], [], [], []))
        assert players["A"].minutes_played == 90
        assert players["A"].started

    def test_starter_subbed_out_second_half(self):
        players = by_name(
            compute_player_stats(
                [lineup("A"), lineup("B", role="RESERVE")], [], [], [sub("A", "B", 2, 10)]
            )
        )
        assert players["A"].minutes_played == 55
        assert players["B"].minutes_played == 35

    def test_sub_in_late_in_first_half_clock(self):
        players = by_name(
            compute_player_stats(
                [lineup("A"), lineup("B", role="RESERVE")], [], [], [sub("A", "B", 1, 70)]
            )
        )
        assert players["B"].minutes_played == 20

    def test_unused_reserve(self):
        players = by_name(compute_player_stats([lineup("R", role="RESERVE")], [], [], []))
        assert players["R"].minutes_played == 0
        assert players["R"].participated
        assert not players["R"].started

    def test_subbed_out_without_lineup_counts_from_kickoff(self):
        players = by_name(compute_player_stats([], [], [], [sub("X", "Y", 2, 0)]))
        assert players["X"].minutes_played == 45
        assert players["Y"].minutes_played == 45

    def test_goalkeeper_starter(self):
        players = by_name(compute_player_stats([lineup("G", role="GK_STARTER")], [], [], []))
        assert players["G"].started
        assert players["G"].minutes_played == 90


class TestCountsAndIdentity:
    """Goals, assists, cards and grouping."""

    def test_second_yellow_counts_yellow_and_red(self):
        players = by_name(compute_player_stats([lineup("A")], [], [card("A", "SECOND_YELLOW")], []))
        assert players["A"].yellow_cards == 1
        assert players["A"].red_cards == 1

    def test_yellow_then_second_yellow(self):
        players = by_name(
            compute_player_stats(
                [lineup("A")], [], [card("A", "YELLOW", minute=10), card("A", "SECOND_YELLOW")], []
            )
        )
        assert (players["A"].yellow_cards, players["A"].red_cards) == (2, 1)

    def test_goals_and_assists(self):
        players = by_name(
            compute_player_stats(
                [lineup("A")], [goal("A"), goal("A", kind="PENALTY"), goal("A", kind="ASSIST")], [], []
            )
        )
        assert players["A"].goals == 2
        assert players["A"].assists == 1

    def test_linked_athlete_groups_by_id(self):
        athlete_id = uuid.uuid4()
        players = compute_player_stats(
            [lineup("FULANO", athlete_id=athlete_id)],
            [goal("Fulano de Tal", athlete_id=athlete_id)],
            [],
            [],
        )
        assert len(players) == 1
        assert players[0].goals == 1

    def test_same_name_on_both_sides_is_two_players(self):
        players = compute_player_stats(
            [lineup("SILVA", side="HOME"), lineup("SILVA", side="AWAY")], [], [], []
        )
        assert len(players) == 2

    def test_same_athlete_id_on_both_sides_is_two_players(self):
        athlete_id = uuid.uuid4()
        players = compute_player_stats(
            [
                lineup("JOAO SILVA", athlete_id=athlete_id),
                lineup("JOAO SILVA", side="AWAY", athlete_id=athlete_id),
            ],
            [goal("JOAO SILVA", side="AWAY", athlete_id=athlete_id)],
            [],
            [],
        )
        by_side = {p.team_side: p for p in players}
        assert len(players) == 2
        assert by_side["HOME"].goals == 0
        assert by_side["AWAY"].goals == 1

    def test_accented_and_plain_spelling_group_together(self):
        players = compute_player_stats(
            [lineup("João Silva")],
            [goal("JOAO SILVA")],
            [card("joao  silva", "YELLOW")],
            [],
        )
        assert len(players) == 1
        assert players[0].goals == 1
        assert players[0].yellow_cards == 1
        assert players[0].athlete_name_raw == "João Silva"


class TestRebuild:
    """rebuild_player_stats against the database."""

    async def test_rebuild_replaces_rows(self, session):
        session.add_all([lineup("A"), lineup("B", role="RESERVE"), sub("A", "B", 2, 10), goal("A")])
        await session.commit()

        first = await rebuild_player_stats(session, match_key=KEY)
        second = await rebuild_player_stats(session, match_key=KEY)
        assert (first.deleted_rows, first.inserted_rows) == (0, 2)
        assert (second.deleted_rows, second.inserted_rows) == (2, 2)

        result = await session.execute(select(MatchPlayerStat).where(MatchPlayerStat.match_key == KEY))
        rows = by_name(result.scalars().all())
        assert rows["A"].minutes_played == 55
        assert rows["A"].goals == 1
        assert rows["B"].minutes_played == 35
        assert all(row.source == DERIVED_SOURCE for row in rows.values())
        assert all(row.match_id is None for row in rows.values())

    async def test_rebuild_without_events(self, session):
        result = await rebuild_player_stats(session, match_key=KEY)
        assert result.inserted_rows == 0

    async def test_failed_rebuild_keeps_previous_rows(self, session, session_factory):
        session.add_all([lineup("A"), lineup("B", role="RESERVE"), sub("A", "B", 2, 10), goal("A")])
        await session.commit()
        await rebuild_player_stats(session, match_key=KEY)

        def with_duplicate_uid(players, **kwargs):
            rows = to_stat_rows(players, **kwargs)
            clash = MatchPlayerStat(
                match_key=KEY, event_uid=rows[0].event_uid, team_side="HOME", athlete_name_raw="CLASH"
            )
            return rows + [clash]

        with patch("matchdesk.sumula.stats.to_stat_rows", side_effect=with_duplicate_uid):
            with pytest.raises(PipelineError) as exc:
                await rebuild_player_stats(session, match_key=KEY)
        assert exc.value.stage == "REBUILD"
        assert exc.value.code == "INTEGRITY_VIOLATION"

        async with session_factory() as fresh:
            result = await fresh.execute(select(MatchPlayerStat).where(MatchPlayerStat.match_key == KEY))
            rows = by_name(result.scalars().all())
        assert set(rows) == {"A", "B"}
        assert rows["A"].goals == 1
