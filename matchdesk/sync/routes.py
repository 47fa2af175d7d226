"""Cron and ops endpoints for fixture and roster sync and the run ledger."""

import logging
from typing import AsyncGenerator, Optional

from fastapi import APIRouter, Depends, Query, Request

from matchdesk.database import get_session_factory
from matchdesk.jobs.tracking import RunKind, get_last_success_at, get_recent_runs, mark_stale_runs
from matchdesk.models import as_utc
from matchdesk.security import limiter, rate_limit, verify_cron_secret
from matchdesk.sync.adapter import FixtureSourceAdapter, FPFAdapter, RosterSourceAdapter
from matchdesk.sync.fixtures import run_fixture_sync
from matchdesk.sync.roster import run_roster_sync

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sync"], dependencies=[Depends(verify_cron_secret)])


async def get_fixture_adapter() -> AsyncGenerator[FixtureSourceAdapter, None]:
    """One scraper (and HTTP client) per request."""
    adapter = FPFAdapter()
    try:
        yield adapter
    finally:
        await adapter.close()


async def get_roster_adapter() -> AsyncGenerator[RosterSourceAdapter, None]:
    adapter = FPFAdapter()
    try:
        yield adapter
    finally:
        await adapter.close()


@router.api_route("/cron/matches", methods=["GET", "POST"])
@limiter.limit(rate_limit)
async def cron_sync_matches(
    request: Request,
    session_factory=Depends(get_session_factory),
    adapter: FixtureSourceAdapter = Depends(get_fixture_adapter),
):
    """Reconcile fixtures of every active competition."""
    summary = await run_fixture_sync(session_factory=session_factory, adapter=adapter)
    return {"ok": True, **summary}


@router.api_route("/cron/roster", methods=["GET", "POST"])
@limiter.limit(rate_limit)
async def cron_sync_roster(
    request: Request,
    session_factory=Depends(get_session_factory),
    adapter: RosterSourceAdapter = Depends(get_roster_adapter),
):
    """Import registered athletes of the tracked club from every active competition."""
    summary = await run_roster_sync(session_factory=session_factory, adapter=adapter)
    return {"ok": True, **summary}


@router.post("/ops/runs/sweep-stale")
@limiter.limit(rate_limit)
async def sweep_stale_runs(
    request: Request,
    session_factory=Depends(get_session_factory),
):
    """Close RUNNING ledger entries older than RUN_STALE_AFTER_MINUTES."""
    async with session_factory() as session:
        swept = await mark_stale_runs(session)
    return {"ok": True, "swept": swept}


@router.get("/ops/runs")
@limiter.limit(rate_limit)
async def list_runs(
    request: Request,
    kind: Optional[RunKind] = Query(None),
    limit: int = Query(20, ge=1, le=200),
    session_factory=Depends(get_session_factory),
):
    async with session_factory() as session:
        runs = await get_recent_runs(session, kind=kind, limit=limit)
        last_success = await get_last_success_at(session, kind) if kind else None

    return {
        "last_success_at": as_utc(last_success).isoformat() if last_success else None,
        "runs": [
            {
                "id": str(run.id),
                "kind": run.kind,
                "status": run.status,
                "started_at": as_utc(run.started_at).isoformat(),
                "finished_at": as_utc(run.finished_at).isoformat() if run.finished_at else None,
                "summary": run.summary_json,
                "error": run.error_text,
            }
            for run in runs
        ],
    }
