"""
Stale job sweeper — re-drives jobs left pending/processing by a crash or an
abandoned request. Invoked by the cron route or the in-process scheduler.
"""
import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session
from scene_import.agents.import_agent import PipelineDeps, run_import_job
from scene_import.dao.job_store import JobStore

logger = logging.getLogger(__name__)


def sweep_stale_jobs(
    db: Session,
    deps: PipelineDeps,
    stale_minutes: int = 10,
    limit: int = 5,
    now: datetime | None = None,
) -> dict:
    # A zero threshold would re-drive jobs that are running right now
    if stale_minutes < 1:
        raise ValueError(f"stale_minutes must be >= 1, got {stale_minutes}")
    if limit < 1:
        raise ValueError(f"limit must be >= 1, got {limit}")

    stale_cutoff = (now or datetime.utcnow()) - timedelta(minutes=stale_minutes)
    jobs = JobStore(db).list_stale(stale_cutoff, limit)
    logger.info("[Sweeper] %d stale jobs older than %s", len(jobs), stale_cutoff.isoformat())

    processed = ok = failed = 0
    for job in jobs:
        processed += 1
        outcome = run_import_job(job.id, db, deps)
        if outcome.ok:
            ok += 1
        else:
            failed += 1
            logger.warning("[Sweeper] Job %s failed again [%s]: %s", job.id, outcome.kind, outcome.error)

    logger.info("[Sweeper] processed=%d success=%d failed=%d", processed, ok, failed)
    return {
        "ok"          : True,
        "stale_cutoff": stale_cutoff.isoformat(),
        "candidates"  : len(jobs),
        "processed"   : processed,
        "success"     : ok,
        "failed"      : failed,
    }
