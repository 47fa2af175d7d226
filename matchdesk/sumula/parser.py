"""
Raw match-sheet text -> CanonicalReport.

The sheet layout varies between competitions, so every field is read by an
ordered list of extractors; the first extractor that yields a value wins
(labeled fields first, positional fallbacks after). Lines that fit no
pattern are ignored. Only input that is not text at all is an error.
"""

import logging
import re
import unicodedata
from typing import Callable, Iterable, Optional, TypeVar

from matchdesk.sumula.canonical import (
    CanonicalAthlete,
    CanonicalReport,
    FinalScore,
    MatchMeta,
    TeamLineup,
)
from matchdesk.sumula.errors import CanonicalParseError

logger = logging.getLogger(__name__)

T = TypeVar("T")
Extractor = Callable[[list[str]], Optional[T]]

TEAM_NAME_MAX = 80

NAME_PATTERN = r"[A-Za-zÀ-ÿ][A-Za-zÀ-ÿ' .-]{1,60}"
SHIRT_PREFIX = r"(?:(?P<{0}>\d{{1,2}})\s*[-.)]?\s*)?"

_LABELED_SCORE_RE = re.compile(
    r"(?:placar|resultado)\s*(?:final)?[^\d]{0,20}(\d{1,2})\s*[-xX:]\s*(\d{1,2})", re.IGNORECASE
)
# Positional fallback skips dates ("12-05-2024") and kickoff times ("16:00")
_POSITIONAL_SCORE_RE = re.compile(r"(?<![\d/.:-])(\d{1,2})\s*[-xX]\s*(\d{1,2})(?![\d/.:-])")

_HOME_LABEL_RE = re.compile(r"(?:equipe|clube)?\s*(?:mandante|home)\s*[:\-]\s*(.+)$", re.IGNORECASE)
_AWAY_LABEL_RE = re.compile(r"(?:equipe|clube)?\s*(?:visitante|away)\s*[:\-]\s*(.+)$", re.IGNORECASE)
_VERSUS_RE = re.compile(r"^\s*([^\d].{2,80}?)\s+[xX]\s+([^\d].{2,80}?)\s*$")

_HOME_HEADER_RE = re.compile(r"\b(MANDANTE|HOME)\b")
_AWAY_HEADER_RE = re.compile(r"\b(VISITANTE|AWAY)\b")
_STARTER_HEADER_RE = re.compile(r"\bTITULAR(ES)?\b")
_RESERVE_HEADER_RE = re.compile(r"\bRESERVAS?\b")
_GOALS_HEADER_RE = re.compile(r"^(GOLS|GOLS MARCADOS|GOLEADORES)\b")
_CARDS_HEADER_RE = re.compile(r"^(CARTOES|CARTAO|ADVERTENCIAS|CARTOES APLICADOS)\b")
_SUBS_HEADER_RE = re.compile(r"^(SUBSTITUICOES|SUBSTITUICAO)\b")

_REGISTRY_RE = re.compile(r"\b(?:CBF|REGISTRO)\b\s*(?:N[º°O.]?\s*)?[:#]?\s*(\d{3,12})", re.IGNORECASE)
_IDENTITY_TAIL_RE = re.compile(r"\b(CBF|REGISTRO|RG|CPF)\b.*$", re.IGNORECASE)
_CAPTAIN_RE = re.compile(r"\((?:C|CAP)\)|\bCAP\b\.?$", re.IGNORECASE)
_GOALKEEPER_RE = re.compile(r"\((?:G|GOL|GK)\)", re.IGNORECASE)
_ATHLETE_RE = re.compile(rf"^{SHIRT_PREFIX.format('shirt')}(?P<name>{NAME_PATTERN})$")

_EVENT_PREFIX_RE = re.compile(
    r"^(?P<half>[12])\s*[º°o]?\s*T\s*(?P<minute>\d{1,3})\s*['’]?\s+(?P<rest>.+)$", re.IGNORECASE
)
_GOAL_RE = re.compile(
    rf"^{SHIRT_PREFIX.format('shirt')}(?P<name>{NAME_PATTERN}?)(?:\s*\((?P<kind>[^)]+)\))?$"
)
_CARD_RE = re.compile(
    rf"^(?P<card>SEGUNDO\s+AMARELO|2\s*[º°O]?\s*AMARELO|AMARELO|VERMELHO|CA|CV)\s+"
    rf"{SHIRT_PREFIX.format('shirt')}(?P<name>{NAME_PATTERN}?)(?:\s*\((?P<reason>[^)]+)\))?$",
    re.IGNORECASE,
)
_SUB_RE = re.compile(
    rf"^(?:SAI|SAIU)\s*:?\s+{SHIRT_PREFIX.format('out_shirt')}(?P<out_name>{NAME_PATTERN}?)\s+"
    rf"(?:ENTRA|ENTROU)\s*:?\s+{SHIRT_PREFIX.format('in_shirt')}(?P<in_name>{NAME_PATTERN})$",
    re.IGNORECASE,
)


def normalize_whitespace(value: str) -> str:
    return " ".join(value.split())


def normalize_header(value: str) -> str:
    text = unicodedata.normalize("NFD", value)
    text = "".join(c for c in text if not unicodedata.combining(c))
    return text.upper()


def sanitize_team_name(value: str) -> str:
    cleaned = "".join(
        c for c in normalize_whitespace(value) if c.isalnum() or c in " .'-()/"
    )
    return cleaned.strip()[:TEAM_NAME_MAX]


def first_match(extractors: Iterable[Extractor], lines: list[str]) -> Optional[T]:
    for extractor in extractors:
        value = extractor(lines)
        if value is not None:
            return value
    return None


# ---------------------------------------------------------------------------
# Match meta
# ---------------------------------------------------------------------------


def _score_from(pattern: re.Pattern) -> Extractor:
    def extract(lines: list[str]) -> Optional[FinalScore]:
        for line in lines:
            m = pattern.search(line)
            if m:
                return FinalScore(home=int(m.group(1)), away=int(m.group(2)))
        return None

    return extract


def _labeled_team(pattern: re.Pattern) -> Extractor:
    def extract(lines: list[str]) -> Optional[str]:
        for line in lines:
            m = pattern.search(line)
            if m:
                name = sanitize_team_name(m.group(1))
                if name:
                    return name
        return None

    return extract


def _versus_team(group: int) -> Extractor:
    def extract(lines: list[str]) -> Optional[str]:
        for line in lines:
            m = _VERSUS_RE.match(line)
            if m:
                name = sanitize_team_name(m.group(group))
                if name:
                    return name
        return None

    return extract


SCORE_EXTRACTORS = (_score_from(_LABELED_SCORE_RE), _score_from(_POSITIONAL_SCORE_RE))
HOME_TEAM_EXTRACTORS = (_labeled_team(_HOME_LABEL_RE), _versus_team(1))
AWAY_TEAM_EXTRACTORS = (_labeled_team(_AWAY_LABEL_RE), _versus_team(2))


def parse_match_meta(lines: list[str]) -> MatchMeta:
    return MatchMeta(
        home_team=first_match(HOME_TEAM_EXTRACTORS, lines),
        away_team=first_match(AWAY_TEAM_EXTRACTORS, lines),
        final_score=first_match(SCORE_EXTRACTORS, lines),
    )


# ---------------------------------------------------------------------------
# Lineups and events
# ---------------------------------------------------------------------------


def parse_athlete_line(line: str) -> Optional[CanonicalAthlete]:
    """Parse ``"10 - FULANO DE TAL (C) CBF 123456"`` style lines."""
    registry = _REGISTRY_RE.search(line)
    text = _IDENTITY_TAIL_RE.sub("", line)

    is_captain = bool(_CAPTAIN_RE.search(text))
    is_goalkeeper = bool(_GOALKEEPER_RE.search(text))
    text = normalize_whitespace(_GOALKEEPER_RE.sub("", _CAPTAIN_RE.sub("", text)))
    if len(text) < 3:
        return None

    m = _ATHLETE_RE.match(text)
    if not m:
        return None
    name = normalize_whitespace(m.group("name"))
    if len(name) < 3:
        return None

    return CanonicalAthlete(
        name=name,
        shirt_number=int(m.group("shirt")) if m.group("shirt") else None,
        is_captain=is_captain,
        is_goalkeeper=is_goalkeeper,
        cbf_registry=registry.group(1) if registry else None,
    )


def _goal_kind(label: Optional[str]) -> str:
    if not label:
        return "GOAL"
    text = normalize_header(label).strip()
    if "CONTRA" in text or text == "GC":
        return "OWN_GOAL"
    if text.startswith("PEN"):
        return "PENALTY"
    if text.startswith("ASS"):
        return "ASSIST"
    return "GOAL"


def _card_type(label: str) -> str:
    text = normalize_header(label)
    if "SEGUNDO" in text or text.startswith("2"):
        return "SECOND_YELLOW"
    if text in ("VERMELHO", "CV"):
        return "RED"
    return "YELLOW"


def parse_event_line(section: str, team_side: str, line: str) -> Optional[dict]:
    """Parse one line of the GOLS / CARTOES / SUBSTITUICOES sections.

    Examples:
        GOALS: "1T 23' 10 FULANO", "2T 40' 9 CICLANO (PENALTI)"
        CARDS: "2T 05' AMARELO 8 BELTRANO (RECLAMACAO)"
        SUBS:  "2T 10' SAI 7 FULANO ENTRA 17 BELTRANO"
    """
    prefix = _EVENT_PREFIX_RE.match(line)
    if not prefix:
        return None
    half = int(prefix.group("half"))
    minute = int(prefix.group("minute"))
    rest = prefix.group("rest").strip()

    if section == "GOALS":
        m = _GOAL_RE.match(rest)
        if not m:
            return None
        return {
            "type": "GOAL",
            "team_side": team_side,
            "half": half,
            "minute": minute,
            "athlete_name": normalize_whitespace(m.group("name")),
            "shirt_number": int(m.group("shirt")) if m.group("shirt") else None,
            "kind": _goal_kind(m.group("kind")),
        }

    if section == "CARDS":
        m = _CARD_RE.match(rest)
        if not m:
            return None
        return {
            "type": "CARD",
            "team_side": team_side,
            "half": half,
            "minute": minute,
            "athlete_name": normalize_whitespace(m.group("name")),
            "card_type": _card_type(m.group("card")),
            "reason": normalize_whitespace(m.group("reason")) if m.group("reason") else None,
        }

    if section == "SUBS":
        m = _SUB_RE.match(rest)
        if not m:
            return None
        return {
            "type": "SUBSTITUTION",
            "team_side": team_side,
            "half": half,
            "minute": minute,
            "athlete_out_name": normalize_whitespace(m.group("out_name")),
            "athlete_in_name": normalize_whitespace(m.group("in_name")),
        }

    return None


def parse_sections(lines: list[str]) -> tuple[dict[str, TeamLineup], list[dict]]:
    """Walk the sheet top to bottom, tracking the current side and section."""
    lineups = {"HOME": TeamLineup(), "AWAY": TeamLineup()}
    events: list[dict] = []
    team: Optional[str] = None
    section: Optional[str] = None

    for line in lines:
        header = normalize_header(line)

        # A team header closes the previous team's open section
        team_header = None
        if _HOME_HEADER_RE.search(header):
            team_header = "HOME"
        elif _AWAY_HEADER_RE.search(header):
            team_header = "AWAY"
        if team_header:
            team = team_header
            section = None

        if _STARTER_HEADER_RE.search(header):
            section = "STARTER"
            continue
        if _RESERVE_HEADER_RE.search(header):
            section = "RESERVE"
            continue
        if _GOALS_HEADER_RE.match(header):
            section = "GOALS"
            continue
        if _CARDS_HEADER_RE.match(header):
            section = "CARDS"
            continue
        if _SUBS_HEADER_RE.match(header):
            section = "SUBS"
            continue

        if team_header or team is None or section is None:
            continue

        if section in ("STARTER", "RESERVE"):
            athlete = parse_athlete_line(line)
            if athlete is None:
                continue
            lineup = lineups[team]
            (lineup.starters if section == "STARTER" else lineup.reserves).append(athlete)
            continue

        event = parse_event_line(section, team, line)
        if event is not None:
            events.append(event)

    return lineups, events


def parse_to_canonical(raw_text: str) -> CanonicalReport:
    """Convert extracted sheet text to the canonical structure."""
    if not isinstance(raw_text, str):
        raise CanonicalParseError(
            f"raw text must be a string, got {type(raw_text).__name__}",
            stage="PARSE_CANONICAL",
        )

    lines = [normalize_whitespace(line) for line in raw_text.splitlines()]
    lines = [line for line in lines if line]

    lineups, events = parse_sections(lines)
    report = CanonicalReport(match_meta=parse_match_meta(lines), lineups=lineups, events=events)
    logger.debug(f"[SUMULA_PARSE] canonical preview: {report.preview()}")
    return report
