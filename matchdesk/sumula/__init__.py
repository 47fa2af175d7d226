"""
Match-sheet (súmula) pipeline.

Flow per document:
    upload -> UPLOADED
    parse  -> PARSED_RAW -> CANONICAL     (pdf text, canonical report)
    ingest -> EVENTS_SAVED                (lineups, goals, cards, substitutions)
    stats  -> match_player_stats (DERIVED)

Entry points live in matchdesk.sumula.pipeline. This package module stays
import-free because matchdesk.models depends on matchdesk.sumula.errors.
"""
