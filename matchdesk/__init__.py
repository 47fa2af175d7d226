"""Matchdesk: match-sheet ingestion, derived player stats and fixture sync."""

__version__ = "0.4.0"
