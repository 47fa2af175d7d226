"""
Fixture and roster sync from the federation website.

Usage:
    from matchdesk.sync import FPFAdapter, run_fixture_sync, run_roster_sync

    adapter = FPFAdapter()
    try:
        summary = await run_fixture_sync(session_factory=AsyncSessionLocal, adapter=adapter)
        roster = await run_roster_sync(session_factory=AsyncSessionLocal, adapter=adapter)
    finally:
        await adapter.close()
"""

from matchdesk.sync.adapter import FixtureSourceAdapter, FPFAdapter, RosterSourceAdapter
from matchdesk.sync.fixtures import run_fixture_sync
from matchdesk.sync.roster import run_roster_sync

__all__ = [
    "FixtureSourceAdapter",
    "FPFAdapter",
    "RosterSourceAdapter",
    "run_fixture_sync",
    "run_roster_sync",
]
