"""Link match-sheet names to registered athletes.

Lookup order:
1. CBF registry number among FPF-sourced athletes (either side)
2. Accent/case-insensitive name among the tracked club's athletes, only on
   the side the tracked club plays in this match

Unresolved names stay unlinked (athlete_id NULL); the raw name is kept.
"""

import logging
import uuid
from typing import Optional

from sqlmodel import select
from sqlalchemy.ext.asyncio import AsyncSession

from matchdesk.models import Athlete
from matchdesk.sumula.identity import normalize_text

logger = logging.getLogger(__name__)


def team_matches_club(team_name: Optional[str], club_key: str) -> bool:
    """True when every word of the club name appears in the team name."""
    tokens = club_key.split()
    words = normalize_text(team_name).split()
    return bool(tokens) and all(token in words for token in tokens)


class AthleteLinker:
    """In-memory index of athletes, loaded once per ingestion."""

    def __init__(self, athletes: list[Athlete], club_name: Optional[str] = None):
        self.club_key = normalize_text(club_name) or None
        self._by_registry: dict[str, uuid.UUID] = {}
        self._by_name: dict[str, uuid.UUID] = {}

        for athlete in athletes:
            registry = (athlete.cbf_registry or "").strip()
            if registry and athlete.source == "FPF":
                self._by_registry.setdefault(registry, athlete.id)

            if not self.club_key or normalize_text(athlete.club_name) != self.club_key:
                continue
            for candidate in (athlete.name, athlete.nickname):
                key = normalize_text(candidate)
                if key:
                    self._by_name.setdefault(key, athlete.id)

    @classmethod
    async def load(cls, session: AsyncSession, club_name: Optional[str] = None) -> "AthleteLinker":
        result = await session.execute(select(Athlete))
        athletes = list(result.scalars().all())
        logger.debug(f"[SUMULA_INGEST] athlete index loaded ({len(athletes)} athletes)")
        return cls(athletes, club_name=club_name)

    def club_side(self, home_team: Optional[str], away_team: Optional[str]) -> Optional[str]:
        """HOME/AWAY for the tracked club, None when absent or ambiguous."""
        if not self.club_key:
            return None
        home = team_matches_club(home_team, self.club_key)
        away = team_matches_club(away_team, self.club_key)
        if home == away:
            return None
        return "HOME" if home else "AWAY"

    def resolve(
        self,
        cbf_registry: Optional[str] = None,
        name_raw: Optional[str] = None,
    ) -> Optional[uuid.UUID]:
        """Registry first, then name. Callers pass no name for the opponent side."""
        registry = (cbf_registry or "").strip()
        if registry and registry in self._by_registry:
            return self._by_registry[registry]

        key = normalize_text(name_raw)
        if not key:
            return None
        return self._by_name.get(key)


class NullLinker:
    """Linker that never resolves (sandbox runs, tests)."""

    def club_side(self, home_team=None, away_team=None):
        return None

    def resolve(self, cbf_registry=None, name_raw=None):
        return None
