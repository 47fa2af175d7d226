"""
Match identity and deterministic event identifiers.

A match key is ``<SCOPE>:<uuid>`` where SCOPE is PROD (a real match) or
SANDBOX (a test match). Every event row carries the key of the match it
belongs to, and an event uid derived from its natural fields so that
re-running ingestion over the same content yields the same uids.
"""

import hashlib
import re
import unicodedata
import uuid
from enum import Enum
from typing import Iterable, Optional, Tuple, Union

from matchdesk.sumula.errors import ScopeValidationError

MATCH_KEY_RE = re.compile(r"^(PROD|SANDBOX):([0-9a-fA-F-]{36})$")


class Scope(str, Enum):
    PROD = "PROD"
    SANDBOX = "SANDBOX"


class TeamSide(str, Enum):
    HOME = "HOME"
    AWAY = "AWAY"


IdLike = Union[uuid.UUID, str, None]


def _coerce_uuid(value: IdLike, field_name: str) -> Optional[uuid.UUID]:
    if value is None or value == "":
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except ValueError:
        raise ScopeValidationError(f"{field_name} must be a UUID, got {value!r}")


def parse_scope(value: Union[str, Scope, None]) -> Scope:
    if isinstance(value, Scope):
        return value
    text = str(value or "").strip().upper()
    try:
        return Scope(text)
    except ValueError:
        raise ScopeValidationError(f"scope must be PROD or SANDBOX, got {value!r}")


def resolve_scope(
    scope: Union[str, Scope, None],
    match_id: IdLike = None,
    sandbox_match_id: IdLike = None,
) -> Tuple[Scope, uuid.UUID]:
    """Validate a scope against its identifiers and return the backing id.

    PROD requires ``match_id`` and forbids ``sandbox_match_id``; SANDBOX is
    the mirror image.
    """
    resolved = parse_scope(scope)
    prod_id = _coerce_uuid(match_id, "match_id")
    sandbox_id = _coerce_uuid(sandbox_match_id, "sandbox_match_id")

    if resolved is Scope.PROD:
        if prod_id is None:
            raise ScopeValidationError("scope PROD requires match_id")
        if sandbox_id is not None:
            raise ScopeValidationError("scope PROD must not carry sandbox_match_id")
        return resolved, prod_id

    if sandbox_id is None:
        raise ScopeValidationError("scope SANDBOX requires sandbox_match_id")
    if prod_id is not None:
        raise ScopeValidationError("scope SANDBOX must not carry match_id")
    return resolved, sandbox_id


def derive_match_key(
    scope: Union[str, Scope, None],
    match_id: IdLike = None,
    sandbox_match_id: IdLike = None,
) -> str:
    resolved, backing_id = resolve_scope(scope, match_id, sandbox_match_id)
    return f"{resolved.value}:{backing_id}"


def parse_match_key(match_key: str) -> Tuple[Scope, uuid.UUID]:
    """Split a match key back into (scope, id). Inverse of derive_match_key."""
    m = MATCH_KEY_RE.match(str(match_key or "").strip())
    if not m:
        raise ScopeValidationError(f"invalid match_key: {match_key!r}")
    scope = Scope(m.group(1))
    return scope, _coerce_uuid(m.group(2), "match_key")


def is_match_key(value: Optional[str]) -> bool:
    return bool(value) and MATCH_KEY_RE.match(value.strip()) is not None


def _uid_part(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def derive_event_uid(kind: str, match_key: str, fields: Iterable) -> str:
    """Deterministic event identifier.

    Formula: SHA256(kind|match_key|field_1|...|field_n), missing fields as "".
    """
    raw = "|".join([kind, match_key, *(_uid_part(f) for f in fields)])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def normalize_name(value: Optional[str]) -> Optional[str]:
    """Trim and collapse whitespace; empty names become None."""
    if value is None:
        return None
    collapsed = " ".join(str(value).split())
    return collapsed or None


def normalize_text(value: Optional[str]) -> str:
    """Upper-case, accent-free, single-spaced form used for comparisons.

    Examples:
        "Galo Maringá"   -> "GALO MARINGA"
        "  são  josé "   -> "SAO JOSE"
    """
    if not value:
        return ""
    text = unicodedata.normalize("NFD", str(value))
    text = "".join(c for c in text if not unicodedata.combining(c))
    return " ".join(text.upper().split())


def player_identity_key(
    team_side: Optional[str],
    athlete_id: IdLike,
    athlete_name_raw: Optional[str],
) -> Optional[str]:
    """Key used to group a player's events within one match.

    Always scoped by side. Linked athletes group by id, everyone else by
    accent/case-folded name, so "João Silva" and "JOAO SILVA" are one player.
    """
    if not team_side:
        return None
    if athlete_id:
        return f"id:{team_side}:{athlete_id}"
    name = normalize_text(athlete_name_raw)
    if not name:
        return None
    return f"name:{team_side}:{name}"


def stable_source_url(
    *,
    url_base: str,
    season_year: int,
    match_date_iso: str,
    home_team: str,
    away_team: str,
    details_url: Optional[str] = None,
) -> str:
    """External identity of a fixture: its detail page, else a synthetic key."""
    if details_url:
        return details_url
    return (
        f"FPF:{url_base}:{season_year}:{match_date_iso}:"
        f"{normalize_text(home_team)}:{normalize_text(away_team)}"
    )
