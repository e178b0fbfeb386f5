# supervisor.py
"""
Recovery supervisor.

Periodically looks for jobs stuck in 'processing' whose owning worker has
stopped heartbeating, snapshots them to the audit sink and force-fails
them. Two independent thresholds must both be exceeded before a job is
declared orphaned:

- job_runtime_threshold: time since the job was claimed (its updated_at)
- heartbeat_stale_after: time since the owning worker last heartbeated

so a slow job on a live worker is never touched.
"""
import json
import logging
import os
import sqlite3
import threading
from datetime import timedelta

from config import configure_logging
from models import JobState, from_iso, to_iso
from storage import Storage

logger = logging.getLogger(__name__)

ORPHAN_REASON = "job timed out or worker stale"


class AuditSink:
    """Writes one timestamped JSON snapshot file per recovery pass."""

    def __init__(self, directory="audit"):
        self.directory = str(directory)

    def record(self, jobs, reason, when):
        os.makedirs(self.directory, exist_ok=True)
        stamp = when.strftime("%Y%m%dT%H%M%S%fZ")
        path = os.path.join(self.directory, f"orphans-{stamp}.json")
        payload = {
            "recorded_at": to_iso(when),
            "reason": reason,
            "jobs": [job.to_dict() for job in jobs],
        }
        # Must be durable before the jobs are mutated
        with open(path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        return path


class Supervisor:
    def __init__(self, storage, audit_sink=None, runtime_threshold=60.0,
                 heartbeat_stale_after=15.0, interval=10.0, stop_event=None):
        self.db = storage
        self.audit_sink = audit_sink or AuditSink()
        self.runtime_threshold = runtime_threshold
        self.heartbeat_stale_after = heartbeat_stale_after
        self.interval = interval
        self.stop_event = stop_event or threading.Event()

    def find_orphans(self):
        now = self.db.now()
        candidates = self.db.list_stuck_processing(now - timedelta(seconds=self.runtime_threshold))
        if not candidates:
            return []

        stale_cutoff = now - timedelta(seconds=self.heartbeat_stale_after)
        heartbeats = {w.id: from_iso(w.last_heartbeat) for w in self.db.list_workers()}

        orphans = []
        for job in candidates:
            last_heartbeat = heartbeats.get(job.locked_by)
            if last_heartbeat is None or last_heartbeat < stale_cutoff:
                orphans.append(job)
        return orphans

    def run_once(self):
        """One recovery pass. Returns the number of jobs force-failed."""
        orphans = self.find_orphans()
        if not orphans:
            logger.info("No stuck jobs found")
            return 0

        path = self.audit_sink.record(orphans, ORPHAN_REASON, self.db.now())
        logger.info("Wrote audit snapshot of %d orphaned job(s) to %s", len(orphans), path)
        recovered = self.db.force_fail(
            [job.id for job in orphans],
            ORPHAN_REASON,
            owners={job.id: job.locked_by for job in orphans},
        )
        for job in orphans:
            if self.db.get_job(job.id).state == JobState.FAILED:
                logger.warning("Job %s: processing -> failed (worker %s stale)", job.id, job.locked_by)
            else:
                logger.info("Job %s changed owner since it was selected, skipped", job.id)

        cutoff = self.db.now() - timedelta(seconds=self.heartbeat_stale_after)
        pruned = self.db.prune_workers_older_than(cutoff)
        if pruned:
            logger.info("Pruned %d stale worker(s): %s", len(pruned), ", ".join(pruned))

        logger.info("Marked %d job(s) as failed (dead workers)", recovered)
        return recovered

    def run(self):
        logger.info(
            "Supervisor started (interval=%ss, runtime threshold=%ss, heartbeat stale after=%ss)",
            self.interval, self.runtime_threshold, self.heartbeat_stale_after,
        )
        while not self.stop_event.is_set():
            try:
                self.run_once()
            except (sqlite3.Error, OSError):
                logger.exception("Supervisor pass failed, will retry")
            self.stop_event.wait(self.interval)
        logger.info("Supervisor stopped")


def run_supervisor_process(settings, once=False):
    configure_logging(settings.log_level)
    with Storage(settings.db_path) as storage:
        supervisor = Supervisor(
            storage,
            audit_sink=AuditSink(settings.audit_dir),
            runtime_threshold=settings.job_runtime_threshold,
            heartbeat_stale_after=settings.heartbeat_stale_after,
            interval=settings.supervisor_interval,
        )
        if once:
            return supervisor.run_once()
        try:
            supervisor.run()
        except KeyboardInterrupt:
            logger.info("Supervisor interrupted")
        return 0
