"""Tests for the FPF scraper (HTTP mocked with httpx.MockTransport)."""

from datetime import date

import httpx
import pytest

from matchdesk.sumula.errors import UpstreamError
from matchdesk.sync.adapter import (
    FPFAdapter,
    is_target_club,
    parse_details,
    parse_listing_date,
    parse_roster,
    parse_score,
    roster_url,
    teams_from_text,
)

pytestmark = pytest.mark.anyio

LISTING_URL = "https://fpf.example/campeonato/paranaense"

LISTING_HTML = """
<html><body>
<h1>Campeonato Paranaense Série A 2024</h1>
<table>
  <tr><th>Data</th><th>Mandante</th><th>Placar</th><th>Visitante</th><th></th></tr>
  <tr>
    <td>12/05/2024</td><td>Galo Maringá</td><td>2 x 1</td><td>Operário Ferroviário</td>
    <td><a href="/jogo/101">Detalhes</a></td>
  </tr>
  <tr>
    <td>19/05/2024</td><td>Londrina</td><td>x</td><td>Galo Maringá</td>
    <td><a href="/jogo/102">Detalhes</a></td>
  </tr>
  <tr>
    <td>19/05/2024</td><td>Coritiba</td><td>0 x 0</td><td>Athletico</td>
    <td><a href="/jogo/103">Detalhes</a></td>
  </tr>
</table>
</body></html>
"""

DETAILS_HTML = """
<html><body>
<h1>Galo Maringá 2 x 1 Operário Ferroviário</h1>
<p>Estádio: Willie Davids</p>
<p>Árbitro: Fulano de Tal</p>
<p>Horário: 16h00</p>
</body></html>
"""

ROSTER_HTML = """
<html><body>
<h1>Atletas habilitados</h1>
<h2>Londrina EC</h2>
<table>
  <thead><tr><th>Apelido</th><th>Nome</th><th>Registro CBF</th><th>Habilitação</th></tr></thead>
  <tr><td>Zeca</td><td>José Carlos Lima</td><td>999.001</td><td>02/01/2024</td></tr>
</table>
<h2>Galo Maringá</h2>
<table>
  <thead><tr><th>Apelido</th><th>Nome</th><th>Registro CBF</th><th>Habilitação</th></tr></thead>
  <tr><td>Joãozinho</td><td>João Silva</td><td>100.001</td><td>10/01/2024</td></tr>
  <tr><td></td><td>Carlos Souza</td><td>100010</td><td>15/01/2024</td></tr>
  <tr><td>Joãozinho</td><td>João Silva</td><td>100001</td><td>20/01/2024</td></tr>
  <tr><td>Sem</td><td>Pedro Sem Registro</td><td></td><td>11/01/2024</td></tr>
</table>
</body></html>
"""


def _adapter(handler, **kwargs) -> FPFAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FPFAdapter(target_club="GALO MARINGA", client=client, retry_delay=0, **kwargs)


class TestParsingHelpers:
    """Tolerant text helpers."""

    def test_listing_date(self):
        assert parse_listing_date("dom 12/05/2024 16:00") == date(2024, 5, 12)
        assert parse_listing_date("31/02/2024") is None
        assert parse_listing_date("sem data") is None

    def test_score_skips_dates_and_times(self):
        assert parse_score("12/05/2024 Galo 2 x 1 Operário") == (2, 1)
        assert parse_score("12-05-2024 Galo x Operário") == (None, None)

    def test_teams_from_text(self):
        assert teams_from_text("Galo Maringá 2 x 1 Operário Ferroviário") == (
            "Galo Maringá",
            "Operário Ferroviário",
        )
        assert teams_from_text("Rodada 3") is None

    def test_target_club_match(self):
        assert is_target_club("Galo Maringá", "GALO MARINGA")
        assert is_target_club("GALO MARINGA F.C.", "galo maringá")
        assert not is_target_club("Maringá FC", "GALO MARINGA")


class TestListing:
    """Competition listing pages."""

    async def test_parse_listing_keeps_club_rows(self):
        adapter = _adapter(lambda request: httpx.Response(200, text=LISTING_HTML))
        result = await adapter.fetch_fixtures(LISTING_URL)

        assert len(result.fixtures) == 2
        home, away = result.fixtures
        assert home.competition_name == "Campeonato Paranaense Série A 2024"
        assert home.season_year == 2024
        assert home.match_date == date(2024, 5, 12)
        assert (home.home_team, home.away_team) == ("Galo Maringá", "Operário Ferroviário")
        assert (home.goals_home, home.goals_away) == (2, 1)
        assert home.details_url == "https://fpf.example/jogo/101"

        assert (away.home_team, away.away_team) == ("Londrina", "Galo Maringá")
        assert away.goals_home is None

        assert result.debug.club_rows_found == 2
        assert result.debug.anchors_found == 3
        assert result.debug.fetched_bytes > 0

    async def test_retries_soft_failures(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            if len(calls) == 1:
                return httpx.Response(503)
            return httpx.Response(200, text=LISTING_HTML)

        adapter = _adapter(handler, max_retries=2)
        result = await adapter.fetch_fixtures(LISTING_URL)
        assert len(calls) == 2
        assert len(result.fixtures) == 2

    async def test_gives_up_after_retries(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(503)

        adapter = _adapter(handler, max_retries=2)
        with pytest.raises(UpstreamError) as exc:
            await adapter.fetch_fixtures(LISTING_URL)
        assert len(calls) == 3
        assert exc.value.stage == "FETCH"
        assert "http_503" in exc.value.message

    async def test_hard_failure_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(403)

        adapter = _adapter(handler, max_retries=2)
        with pytest.raises(UpstreamError):
            await adapter.fetch_fixtures(LISTING_URL)
        assert len(calls) == 1

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        adapter = _adapter(handler, max_retries=1)
        with pytest.raises(UpstreamError):
            await adapter.fetch_fixtures(LISTING_URL)


class TestDetails:
    """Match detail pages."""

    def test_parse_details(self):
        details = parse_details(DETAILS_HTML)
        assert (details.home_team, details.away_team) == ("Galo Maringá", "Operário Ferroviário")
        assert (details.goals_home, details.goals_away) == (2, 1)
        assert details.venue == "Willie Davids"
        assert details.referee == "Fulano de Tal"
        assert details.kickoff_time == "16:00"

    def test_labeled_score_fallback(self):
        details = parse_details("<p>Jogo encerrado</p><p>Placar final: 3 x 0</p>")
        assert (details.goals_home, details.goals_away) == (3, 0)

    async def test_missing_page_gives_empty_details(self):
        adapter = _adapter(lambda request: httpx.Response(404))
        details = await adapter.fetch_match_details("https://fpf.example/jogo/999")
        assert not details.has_any()

    async def test_fetch_details(self):
        adapter = _adapter(lambda request: httpx.Response(200, text=DETAILS_HTML))
        details = await adapter.fetch_match_details("https://fpf.example/jogo/101")
        assert details.has_score()


class TestRoster:
    """Registered-athlete pages."""

    def test_roster_url(self):
        assert roster_url(LISTING_URL + "/") == f"{LISTING_URL}/atletas-habilitados"

    def test_parse_roster_reads_club_table(self):
        result = parse_roster(ROSTER_HTML, "GALO MARINGA")

        assert [a.cbf_registry for a in result.athletes] == ["100001", "100010"]
        joao, carlos = result.athletes
        assert (joao.name, joao.nickname) == ("João Silva", "Joãozinho")
        assert joao.habilitation_date == date(2024, 1, 10)
        assert carlos.nickname is None
        assert result.debug.rows_total == 4
        assert result.debug.club_rows == 3

    def test_parse_roster_without_club_table(self):
        result = parse_roster(ROSTER_HTML, "OPERARIO")
        assert result.athletes == []
        assert result.debug.rows_total == 0

    async def test_fetch_roster(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, text=ROSTER_HTML)

        adapter = _adapter(handler)
        result = await adapter.fetch_roster(roster_url(LISTING_URL))
        assert seen == [f"{LISTING_URL}/atletas-habilitados"]
        assert len(result.athletes) == 2

    async def test_missing_roster_page_raises(self):
        adapter = _adapter(lambda request: httpx.Response(404))
        with pytest.raises(UpstreamError) as exc:
            await adapter.fetch_roster(roster_url(LISTING_URL))
        assert exc.value.stage == "FETCH"
        assert "http_404" in exc.value.message
