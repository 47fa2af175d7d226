"""Canonical match-sheet structure, stored as documents.canonical_json."""

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

SIDES = ("HOME", "AWAY")


@dataclass
class CanonicalAthlete:
    name: str
    shirt_number: Optional[int] = None
    is_captain: bool = False
    is_goalkeeper: bool = False
    cbf_registry: Optional[str] = None


@dataclass
class TeamLineup:
    starters: list[CanonicalAthlete] = field(default_factory=list)
    reserves: list[CanonicalAthlete] = field(default_factory=list)


@dataclass
class FinalScore:
    home: int
    away: int


@dataclass
class MatchMeta:
    home_team: Optional[str] = None
    away_team: Optional[str] = None
    final_score: Optional[FinalScore] = None


@dataclass
class CanonicalReport:
    """Parsed match sheet.

    ``events`` stays a list of plain dicts: it is re-validated one by one at
    ingestion time, where malformed entries are dropped instead of failing
    the whole document.
    """

    match_meta: MatchMeta = field(default_factory=MatchMeta)
    lineups: dict[str, TeamLineup] = field(
        default_factory=lambda: {side: TeamLineup() for side in SIDES}
    )
    events: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    def preview(self) -> dict:
        """Short summary returned to callers after parsing."""
        score = self.match_meta.final_score
        return {
            "home_team": self.match_meta.home_team,
            "away_team": self.match_meta.away_team,
            "final_score": asdict(score) if score else None,
            "home_starters": len(self.lineups["HOME"].starters),
            "home_reserves": len(self.lineups["HOME"].reserves),
            "away_starters": len(self.lineups["AWAY"].starters),
            "away_reserves": len(self.lineups["AWAY"].reserves),
            "events": len(self.events),
        }


def _athlete_from(value: Any) -> Optional[CanonicalAthlete]:
    if not isinstance(value, dict):
        return None
    name = value.get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    shirt = value.get("shirt_number")
    return CanonicalAthlete(
        name=name,
        shirt_number=shirt if isinstance(shirt, int) and not isinstance(shirt, bool) else None,
        is_captain=bool(value.get("is_captain", False)),
        is_goalkeeper=bool(value.get("is_goalkeeper", False)),
        cbf_registry=value.get("cbf_registry") if isinstance(value.get("cbf_registry"), str) else None,
    )


def _lineup_from(value: Any) -> Optional[TeamLineup]:
    if not isinstance(value, dict):
        return None
    starters = value.get("starters")
    reserves = value.get("reserves")
    if not isinstance(starters, list) or not isinstance(reserves, list):
        return None
    return TeamLineup(
        starters=[a for a in map(_athlete_from, starters) if a is not None],
        reserves=[a for a in map(_athlete_from, reserves) if a is not None],
    )


def load_canonical(data: Any) -> Optional[CanonicalReport]:
    """Rebuild a CanonicalReport from stored JSON.

    Returns None when the top-level shape is wrong (missing lineups for a
    side, events not a list). Individual bad athletes are skipped.
    """
    if not isinstance(data, dict):
        return None
    lineups_raw = data.get("lineups")
    events = data.get("events", [])
    if not isinstance(lineups_raw, dict) or not isinstance(events, list):
        return None

    lineups = {}
    for side in SIDES:
        lineup = _lineup_from(lineups_raw.get(side))
        if lineup is None:
            return None
        lineups[side] = lineup

    meta_raw = data.get("match_meta") or {}
    if not isinstance(meta_raw, dict):
        return None
    score_raw = meta_raw.get("final_score")
    score = None
    if isinstance(score_raw, dict):
        home, away = score_raw.get("home"), score_raw.get("away")
        if isinstance(home, int) and isinstance(away, int):
            score = FinalScore(home=home, away=away)

    return CanonicalReport(
        match_meta=MatchMeta(
            home_team=meta_raw.get("home_team"),
            away_team=meta_raw.get("away_team"),
            final_score=score,
        ),
        lineups=lineups,
        events=list(events),
    )
