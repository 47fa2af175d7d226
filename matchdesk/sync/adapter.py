"""
Fixture source adapters.

The FPF adapter scrapes the federation's competition pages (HTML tables)
and match detail pages, and the per-competition roster of registered
athletes. Pages are parsed tolerantly: malformed rows are skipped and
counted, never raised. Only transport failures on a listing or roster page
raise UpstreamError; detail pages degrade to empty details.

Error handling:
- Soft fails (timeout, 429, 5xx): retry with backoff
- Hard fails (404, 403): no retry
"""

import asyncio
import logging
import random
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Optional
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup

from matchdesk.config import get_settings
from matchdesk.sumula.errors import UpstreamError
from matchdesk.sumula.identity import normalize_text

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml",
    "Accept-Language": "pt-BR,pt;q=0.9,en;q=0.5",
}
RETRY_DELAY_BASE = 1.0
JITTER_MAX = 0.5
MAX_CANDIDATE_CHARS = 300
ROSTER_PATH = "atletas-habilitados"
ROSTER_NAME_MAX_CHARS = 100

_DATE_RE = re.compile(r"(\d{2})[/\-.](\d{2})[/\-.](\d{4})")
_SCORE_RE = re.compile(r"(?<![\d/.\-])(\d{1,2})\s*[xX\-]\s*(\d{1,2})(?![\d/.\-])")
_TIME_RE = re.compile(r"\b([01]?\d|2[0-3])[:hH]([0-5]\d)\b")
_VERSUS_RE = re.compile(
    r"([A-Za-zÀ-ÿ0-9 .'\-]{3,}?)\s+(?:x|vs|v)\s+([A-Za-zÀ-ÿ0-9 .'\-]{3,})", re.IGNORECASE
)
_HAS_X_RE = re.compile(r"\s[xX]\s")
_LABELED_FIELDS = {
    "venue": re.compile(r"(?:est[áa]dio|local)\s*:\s*(.+)", re.IGNORECASE),
    "referee": re.compile(r"(?:[áa]rbitro|arbitragem)\s*:\s*(.+)", re.IGNORECASE),
    "kickoff_time": re.compile(r"(?:hor[áa]rio|hora)\s*:\s*(\d{1,2}[:hH]\d{2})", re.IGNORECASE),
}


@dataclass
class FixtureCandidate:
    """One fixture row as listed on a competition page."""

    competition_name: str
    season_year: int
    match_date: date
    home_team: str
    away_team: str
    goals_home: Optional[int] = None
    goals_away: Optional[int] = None
    details_url: Optional[str] = None


@dataclass
class FixtureDetails:
    """Fields read from a match detail page; all optional."""

    goals_home: Optional[int] = None
    goals_away: Optional[int] = None
    venue: Optional[str] = None
    kickoff_time: Optional[str] = None
    referee: Optional[str] = None
    home_team: Optional[str] = None
    away_team: Optional[str] = None

    def has_any(self) -> bool:
        return any(value is not None for value in asdict(self).values())

    def has_score(self) -> bool:
        return self.goals_home is not None and self.goals_away is not None


@dataclass
class FetchDebug:
    """Listing-page counters, summed into the sync summary."""

    fetched_bytes: int = 0
    anchors_found: int = 0
    candidates_parsed: int = 0
    candidates_discarded_too_long: int = 0
    rows_with_x_found: int = 0
    club_rows_found: int = 0

    def merge(self, other: "FetchDebug") -> None:
        for key, value in asdict(other).items():
            setattr(self, key, getattr(self, key) + value)


@dataclass
class FixtureFetchResult:
    fixtures: list[FixtureCandidate] = field(default_factory=list)
    debug: FetchDebug = field(default_factory=FetchDebug)


@dataclass
class RosterAthlete:
    """One registered athlete listed on a competition's roster page."""

    cbf_registry: str
    name: str
    nickname: Optional[str] = None
    habilitation_date: Optional[date] = None


@dataclass
class RosterDebug:
    rows_total: int = 0
    club_rows: int = 0

    def merge(self, other: "RosterDebug") -> None:
        self.rows_total += other.rows_total
        self.club_rows += other.club_rows


@dataclass
class RosterFetchResult:
    athletes: list[RosterAthlete] = field(default_factory=list)
    debug: RosterDebug = field(default_factory=RosterDebug)


class FixtureSourceAdapter(ABC):
    """Source of fixtures for the sync job."""

    name: str = "base"

    @abstractmethod
    async def fetch_fixtures(self, url: str) -> FixtureFetchResult:
        """Fixtures listed at ``url``. Raises UpstreamError on transport failure."""

    @abstractmethod
    async def fetch_match_details(self, url: str) -> FixtureDetails:
        """Details of one fixture. Never raises; returns empty details instead."""

    async def close(self) -> None:
        pass


class RosterSourceAdapter(ABC):
    """Source of registered athletes for the roster sync."""

    name: str = "base"

    @abstractmethod
    async def fetch_roster(self, url: str) -> RosterFetchResult:
        """Tracked club's athletes listed at ``url``. Raises UpstreamError on transport failure."""

    async def close(self) -> None:
        pass


def is_target_club(team_name: str, target: str) -> bool:
    """True when every word of ``target`` appears in the team name."""
    normalized = normalize_text(team_name)
    tokens = normalize_text(target).split()
    return bool(tokens) and all(token in normalized for token in tokens)


def parse_listing_date(raw: str) -> Optional[date]:
    m = _DATE_RE.search(raw)
    if not m:
        return None
    dd, mm, yyyy = (int(g) for g in m.groups())
    try:
        return date(yyyy, mm, dd)
    except ValueError:
        return None


def parse_score(raw: str) -> tuple[Optional[int], Optional[int]]:
    m = _SCORE_RE.search(_DATE_RE.sub(" ", raw))
    if not m:
        return None, None
    return int(m.group(1)), int(m.group(2))


def _clean(value: str) -> str:
    return " ".join(value.split())


def teams_from_cells(cells: list[str]) -> Optional[tuple[str, str]]:
    candidates = [
        cell
        for cell in (_clean(c) for c in cells)
        if len(cell) >= 3
        and not _DATE_RE.search(cell)
        and not _SCORE_RE.search(cell)
        and not _TIME_RE.fullmatch(cell)
    ]
    if len(candidates) < 2:
        return None
    return candidates[0], candidates[1]


def teams_from_text(raw: str) -> Optional[tuple[str, str]]:
    # "A 2 x 1 B" reads as "A x B"
    text = _SCORE_RE.sub(" x ", _DATE_RE.sub(" ", _clean(raw)))
    text = _TIME_RE.sub(" ", text)
    m = _VERSUS_RE.search(text)
    if not m:
        return None
    home = m.group(1).strip(" -")
    away = m.group(2).strip(" -")
    if len(home) < 3 or len(away) < 3:
        return None
    return home, away


def competition_meta(soup: BeautifulSoup) -> tuple[str, int]:
    heading = soup.find("h1")
    title = _clean(heading.get_text(" ") if heading else (soup.title.get_text(" ") if soup.title else ""))
    year = re.search(r"(20\d{2})", title)
    return title or "FPF", int(year.group(1)) if year else date.today().year


class FPFAdapter(FixtureSourceAdapter, RosterSourceAdapter):
    """Scraper for Federação Paranaense de Futebol competition and roster pages."""

    name = "FPF"

    def __init__(
        self,
        target_club: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        max_retries: Optional[int] = None,
        retry_delay: float = RETRY_DELAY_BASE,
    ):
        settings = get_settings()
        self.target_club = target_club or settings.SYNC_TARGET_CLUB
        self.max_retries = max_retries if max_retries is not None else settings.SYNC_MAX_RETRIES
        self.retry_delay = retry_delay
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            settings = get_settings()
            self._client = httpx.AsyncClient(
                timeout=settings.SYNC_REQUEST_TIMEOUT_SECONDS,
                headers={**DEFAULT_HEADERS, "User-Agent": settings.SYNC_USER_AGENT},
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _backoff(self, attempt: int) -> float:
        if self.retry_delay <= 0:
            return 0.0
        return self.retry_delay * (2 ** attempt) + random.uniform(0, JITTER_MAX)

    async def _fetch_html(self, url: str) -> tuple[Optional[str], Optional[str]]:
        """
        Fetch a page with retry logic.

        Returns:
            (html, None) on success, (None, error) on failure.
        """
        client = await self._get_client()
        error = "max_retries_exceeded"
        for attempt in range(self.max_retries + 1):
            delay = self._backoff(attempt)
            try:
                response = await client.get(url)
            except httpx.TimeoutException:
                error = "timeout"
                logger.warning(f"[FIXTURE_SYNC] Timeout for {url}, attempt {attempt + 1}")
                await asyncio.sleep(delay)
                continue
            except httpx.RequestError as e:
                error = f"request_error: {e}"
                logger.warning(f"[FIXTURE_SYNC] Request error for {url}: {e}")
                await asyncio.sleep(delay)
                continue

            if response.status_code == 429 or response.status_code >= 500:
                error = f"http_{response.status_code}"
                logger.warning(f"[FIXTURE_SYNC] {url} returned {response.status_code}, retrying")
                await asyncio.sleep(delay)
                continue
            if response.status_code >= 400:
                return None, f"http_{response.status_code}"
            return response.text, None

        return None, error

    async def fetch_fixtures(self, url: str) -> FixtureFetchResult:
        html, error = await self._fetch_html(url)
        if html is None:
            raise UpstreamError(f"FPF request failed ({error}) for {url}", stage="FETCH")
        return self.parse_listing(html, url)

    def parse_listing(self, html: str, url: str) -> FixtureFetchResult:
        result = FixtureFetchResult()
        result.debug.fetched_bytes = len(html.encode("utf-8"))

        soup = BeautifulSoup(html, "html.parser")
        competition_name, season_year = competition_meta(soup)
        result.debug.anchors_found = len(soup.find_all("a", href=True))

        for row in soup.find_all("tr"):
            fixture = self._parse_row(row, url, competition_name, season_year, result.debug)
            if fixture is not None:
                result.fixtures.append(fixture)

        logger.debug(f"[FIXTURE_SYNC] {url}: {len(result.fixtures)} fixtures, debug={result.debug}")
        return result

    def _parse_row(self, row, url, competition_name, season_year, debug) -> Optional[FixtureCandidate]:
        row_text = _clean(row.get_text(" "))
        if not row_text:
            return None
        debug.candidates_parsed += 1
        if len(row_text) > MAX_CANDIDATE_CHARS:
            debug.candidates_discarded_too_long += 1
            return None
        if _HAS_X_RE.search(row_text):
            debug.rows_with_x_found += 1

        match_date = parse_listing_date(row_text)
        if match_date is None:
            return None

        cells = [cell.get_text(" ") for cell in row.find_all("td")]
        teams = teams_from_cells(cells) or teams_from_text(row_text)
        if teams is None:
            return None
        home_team, away_team = teams
        if not (is_target_club(home_team, self.target_club) or is_target_club(away_team, self.target_club)):
            return None
        debug.club_rows_found += 1

        goals_home, goals_away = parse_score(row_text)
        link = None
        for pattern in ("jogo", "sumula", "partida"):
            link = row.find("a", href=re.compile(pattern, re.IGNORECASE))
            if link is not None:
                break
        if link is None:
            link = row.find("a", href=True)
        details_url = urljoin(url, link["href"]) if link is not None else None

        return FixtureCandidate(
            competition_name=competition_name,
            season_year=season_year,
            match_date=match_date,
            home_team=home_team,
            away_team=away_team,
            goals_home=goals_home,
            goals_away=goals_away,
            details_url=details_url,
        )

    async def fetch_match_details(self, url: str) -> FixtureDetails:
        html, error = await self._fetch_html(url)
        if html is None:
            logger.warning(f"[FIXTURE_SYNC] detail page unavailable ({error}): {url}")
            return FixtureDetails()
        return parse_details(html)

    async def fetch_roster(self, url: str) -> RosterFetchResult:
        html, error = await self._fetch_html(url)
        if html is None:
            raise UpstreamError(f"FPF roster request failed ({error}) for {url}", stage="FETCH")
        result = parse_roster(html, self.target_club)
        logger.debug(f"[ROSTER_SYNC] {url}: {len(result.athletes)} athletes, debug={result.debug}")
        return result


def parse_details(html: str) -> FixtureDetails:
    """Read score, teams and labeled fields from a detail page."""
    soup = BeautifulSoup(html, "html.parser")
    details = FixtureDetails()

    lines = [_clean(line) for line in soup.get_text("\n").splitlines()]
    lines = [line for line in lines if line]

    for key, pattern in _LABELED_FIELDS.items():
        for line in lines:
            m = pattern.search(line)
            if m:
                value = _clean(m.group(1))
                if key == "kickoff_time":
                    value = value.lower().replace("h", ":")
                setattr(details, key, value[:200])
                break

    heading = soup.find(["h1", "h2"])
    if heading is not None:
        text = _clean(heading.get_text(" "))
        teams = teams_from_text(text)
        if teams is not None:
            details.home_team, details.away_team = teams
        goals_home, goals_away = parse_score(text)
        if goals_home is not None:
            details.goals_home, details.goals_away = goals_home, goals_away

    if details.goals_home is None:
        for line in lines:
            m = re.search(r"(?:placar|resultado)\s*(?:final)?\s*:?\s*(\d{1,2})\s*[xX\-]\s*(\d{1,2})", line, re.IGNORECASE)
            if m:
                details.goals_home, details.goals_away = int(m.group(1)), int(m.group(2))
                break

    return details


def roster_url(url_base: str) -> str:
    """Roster page of a competition: ``<url_base>/atletas-habilitados``."""
    return f"{url_base.rstrip('/')}/{ROSTER_PATH}"


def _column_index(headers: list[str], markers: tuple[str, ...], fallback: int) -> int:
    for idx, header in enumerate(headers):
        normalized = normalize_text(header)
        if any(marker in normalized for marker in markers):
            return idx
    return fallback


def _cell(cells: list[str], idx: int) -> str:
    return cells[idx] if idx < len(cells) else ""


def parse_roster(html: str, target_club: str) -> RosterFetchResult:
    """Read the tracked club's table from a roster page.

    The page lists one table per club under a heading with the club name.
    Columns are located by header text (apelido, nome, registro/CBF,
    habilitação) with positional fallbacks. Rows without a registry number
    or name are skipped; a registry listed twice keeps its first row.
    """
    result = RosterFetchResult()
    soup = BeautifulSoup(html, "html.parser")

    table = None
    for heading in soup.find_all(["h1", "h2", "h3"]):
        if is_target_club(_clean(heading.get_text(" ")), target_club):
            table = heading.find_next("table")
            if table is not None:
                break
    if table is None:
        return result

    rows = table.find_all("tr")
    header_row = table.find("thead")
    header_cells = header_row.find_all("th") if header_row is not None else []
    if not header_cells and rows:
        header_cells = rows[0].find_all(["th", "td"])
    headers = [_clean(cell.get_text(" ")) for cell in header_cells]

    nickname_idx = _column_index(headers, ("APELIDO",), 0)
    name_idx = _column_index(headers, ("NOME",), 1)
    registry_idx = _column_index(headers, ("REGISTRO", "CBF"), 2)
    habilitation_idx = _column_index(headers, ("HABILIT",), 3)

    seen: set[str] = set()
    for row in rows:
        cells = [_clean(cell.get_text(" ")) for cell in row.find_all(["td", "th"])]
        if sum(1 for cell in cells if cell) < 3:
            continue
        if "REGISTRO CBF" in normalize_text(" ".join(cells)) or row.find("th") is not None:
            continue
        result.debug.rows_total += 1

        registry = re.sub(r"\D", "", _cell(cells, registry_idx))
        name = _cell(cells, name_idx)
        nickname = _cell(cells, nickname_idx)
        if not registry or not name:
            continue
        if len(name) > ROSTER_NAME_MAX_CHARS or len(nickname) > ROSTER_NAME_MAX_CHARS:
            continue
        result.debug.club_rows += 1
        if registry in seen:
            continue
        seen.add(registry)

        result.athletes.append(
            RosterAthlete(
                cbf_registry=registry,
                name=name,
                nickname=nickname or None,
                habilitation_date=parse_listing_date(_cell(cells, habilitation_idx)),
            )
        )

    return result
