"""Run ledger: one sync_runs row per pipeline or sync invocation.

Ledger writes use their own session so a run is still recorded (and
finalized) when the work transaction rolls back.

Usage:
    from matchdesk.jobs.tracking import start_run, finish_run, fail_run

    run_id = await start_run(session_factory, "SUMULA_INGEST")
    try:
        ...  # work
        await finish_run(session_factory, run_id, {"inserted": 12})
    except PipelineError as e:
        await fail_run(session_factory, run_id, e.message)

Pipelines use the tracked_run() wrapper, which does the same and also
tags the failure with the stage that was running:

    async with tracked_run(session_factory, RunKind.SUMULA_INGEST, INGEST_STAGES) as run:
        run.stage = "LOAD_DOCUMENT"
        ...
        run.summary = {"inserted": 12}
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from matchdesk.config import get_settings
from matchdesk.models import SyncRun, as_utc, utc_now
from matchdesk.sumula.errors import PipelineError, truncate_message
from matchdesk.telemetry.sentry import sentry_run_context

logger = logging.getLogger(__name__)


class RunKind(str, Enum):
    SUMULA_PARSE = "SUMULA_PARSE"
    SUMULA_INGEST = "SUMULA_INGEST"
    SUMULA_STATS_REBUILD = "SUMULA_STATS_REBUILD"
    FIXTURE_SYNC = "FIXTURE_SYNC"
    ROSTER_SYNC = "ROSTER_SYNC"


class RunStatus(str, Enum):
    RUNNING = "RUNNING"
    DONE = "DONE"
    ERROR = "ERROR"


async def start_run(session_factory, kind: RunKind) -> uuid.UUID:
    """Record a RUNNING run and return its id."""
    run = SyncRun(kind=RunKind(kind).value, status=RunStatus.RUNNING.value)
    async with session_factory() as session:
        session.add(run)
        await session.commit()
    logger.debug(f"[RUN_LEDGER] started {run.kind} run {run.id}")
    return run.id


async def _finalize(
    session_factory,
    run_id: uuid.UUID,
    status: RunStatus,
    summary: Optional[dict] = None,
    error: Optional[str] = None,
) -> bool:
    values = {"status": status.value, "finished_at": utc_now()}
    if summary is not None:
        values["summary_json"] = summary
    if error is not None:
        values["error_text"] = truncate_message(error, get_settings().ERROR_MESSAGE_MAX_CHARS)

    async with session_factory() as session:
        # Only a RUNNING run can be finalized
        result = await session.execute(
            update(SyncRun)
            .where(SyncRun.id == run_id, SyncRun.status == RunStatus.RUNNING.value)
            .values(**values)
        )
        await session.commit()

    if not result.rowcount:
        logger.warning(f"[RUN_LEDGER] run {run_id} was already finalized, {status.value} ignored")
        return False
    logger.debug(f"[RUN_LEDGER] run {run_id} -> {status.value}")
    return True


async def finish_run(session_factory, run_id: uuid.UUID, summary: Optional[dict] = None) -> bool:
    return await _finalize(session_factory, run_id, RunStatus.DONE, summary=summary)


async def fail_run(
    session_factory,
    run_id: uuid.UUID,
    error: str,
    summary: Optional[dict] = None,
) -> bool:
    return await _finalize(session_factory, run_id, RunStatus.ERROR, summary=summary, error=error)


async def get_run(session: AsyncSession, run_id: uuid.UUID) -> Optional[SyncRun]:
    return await session.get(SyncRun, run_id)


async def get_recent_runs(
    session: AsyncSession,
    kind: Optional[RunKind] = None,
    limit: int = 20,
) -> list[SyncRun]:
    query = select(SyncRun).order_by(SyncRun.started_at.desc()).limit(limit)
    if kind is not None:
        query = query.where(SyncRun.kind == RunKind(kind).value)
    result = await session.execute(query)
    return list(result.scalars().all())


async def get_last_success_at(session: AsyncSession, kind: RunKind) -> Optional[datetime]:
    result = await session.execute(
        select(SyncRun.finished_at)
        .where(SyncRun.kind == RunKind(kind).value)
        .where(SyncRun.status == RunStatus.DONE.value)
        .order_by(SyncRun.finished_at.desc())
        .limit(1)
    )
    row = result.first()
    return row[0] if row else None


async def mark_stale_runs(
    session: AsyncSession,
    older_than: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> int:
    """Close RUNNING runs left behind by a crashed process. Returns rows updated."""
    if older_than is None:
        older_than = timedelta(minutes=get_settings().RUN_STALE_AFTER_MINUTES)
    now = as_utc(now) or utc_now()
    cutoff = now - older_than

    result = await session.execute(
        update(SyncRun)
        .where(SyncRun.status == RunStatus.RUNNING.value, SyncRun.started_at < cutoff)
        .values(
            status=RunStatus.ERROR.value,
            finished_at=now,
            error_text=f"stale: exceeded {int(older_than.total_seconds() // 60)} minutes",
        )
    )
    await session.commit()
    swept = result.rowcount or 0
    if swept:
        logger.warning(f"[RUN_LEDGER] marked {swept} stale runs as ERROR")
    return swept


class RunHandle:
    """Mutable state of one tracked run: current stage and final summary."""

    def __init__(self, kind: RunKind, stages: tuple[str, ...]):
        self.kind = RunKind(kind)
        self.stages = stages
        self.stage = stages[0] if stages else "REQUEST"
        self.run_id: Optional[uuid.UUID] = None
        self.summary: dict = {}


@asynccontextmanager
async def tracked_run(
    session_factory,
    kind: RunKind,
    stages: tuple[str, ...],
    on_error: Optional[Callable[[PipelineError], Awaitable[None]]] = None,
    **context,
):
    """Open a ledger run around a block of pipeline work.

    The run is finalized exactly once: DONE with ``handle.summary`` on normal
    exit, ERROR otherwise. Errors leave as PipelineError tagged with the
    stage that was running.
    """
    handle = RunHandle(kind, stages)
    handle.run_id = await start_run(session_factory, handle.kind)
    try:
        with sentry_run_context(handle.kind.value, **context):
            yield handle
    except Exception as e:
        if isinstance(e, PipelineError):
            error = e
            if error.stage not in handle.stages:
                error.stage = handle.stage
        else:
            logger.exception(f"[RUN_LEDGER] {handle.kind.value} failed at {handle.stage}")
            error = PipelineError(str(e) or type(e).__name__, stage=handle.stage)

        if on_error is not None:
            try:
                await on_error(error)
            except Exception as hook_error:
                logger.error(f"[RUN_LEDGER] error hook failed for run {handle.run_id}: {hook_error}")

        await fail_run(
            session_factory,
            handle.run_id,
            f"{error.stage}: {error.message}",
            summary={**handle.summary, "stage": error.stage, "code": error.code},
        )
        if error is e:
            raise
        raise error from e
    else:
        await finish_run(session_factory, handle.run_id, handle.summary)
