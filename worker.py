# worker.py
import logging
import os
import signal
import sqlite3
import threading
import uuid

from config import configure_logging
from executor import run_command
from models import JobState
from storage import Storage

logger = logging.getLogger(__name__)


def _log_transition(job_id, old_state, new_state, extra=""):
    logger.info("Job %s: %s -> %s %s", job_id, old_state, new_state, extra)


class Heartbeat:
    """Refreshes a worker's liveness record from a side thread while commands run."""

    def __init__(self, db_path, worker_id, pid, interval, clock=None):
        self.db_path = db_path
        self.worker_id = worker_id
        self.pid = pid
        self.interval = interval
        self.clock = clock
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"heartbeat-{worker_id}", daemon=True
        )

    def start(self):
        self._thread.start()

    def stop(self):
        self._stop.set()
        self._thread.join(timeout=self.interval + 5.0)

    def _run(self):
        # sqlite connections must not be shared across threads mid-transaction
        db = Storage(self.db_path, clock=self.clock)
        try:
            while not self._stop.wait(self.interval):
                try:
                    db.upsert_heartbeat(self.worker_id, self.pid)
                except sqlite3.Error:
                    logger.exception("Worker %s: heartbeat write failed", self.worker_id)
        finally:
            db.close()


class Worker:
    def __init__(self, storage, worker_id=None, poll_interval=0.25, heartbeat_interval=2.0,
                 stop_event=None, executor=run_command):
        self.db = storage
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.pid = os.getpid()
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self.stop_event = stop_event or threading.Event()
        self.executor = executor

    def run(self):
        """Poll and process jobs until the stop event is set, then deregister."""
        self.db.upsert_heartbeat(self.worker_id, self.pid)
        heartbeat = None
        if self.heartbeat_interval:
            heartbeat = Heartbeat(self.db.db_path, self.worker_id, self.pid,
                                  self.heartbeat_interval, clock=self.db.clock)
            heartbeat.start()
        logger.info("Worker %s started (pid=%s, poll=%ss)", self.worker_id, self.pid, self.poll_interval)

        try:
            while not self.stop_event.is_set():
                try:
                    handled = self.run_once()
                except sqlite3.Error:
                    logger.exception("Worker %s: store error, will retry", self.worker_id)
                    handled = False
                if not handled:
                    self.stop_event.wait(self.poll_interval)
        finally:
            if heartbeat:
                heartbeat.stop()
            try:
                self.db.remove_worker(self.worker_id)
            except sqlite3.Error:
                logger.exception("Worker %s: could not remove worker record", self.worker_id)
            logger.info("Worker %s stopped", self.worker_id)

    def run_once(self):
        """Claim and process at most one job. Returns True if a job was handled."""
        self.db.upsert_heartbeat(self.worker_id, self.pid)
        job = self.db.claim_next(self.worker_id)
        if job is None:
            return False

        _log_transition(job.id, JobState.PENDING, JobState.PROCESSING, f"(claimed by {self.worker_id})")
        self._process_job(job)
        return True

    def _process_job(self, job):
        result = self.executor(job.command)

        if result.ok:
            if self.db.complete(job.id, result.output, result.exit_code):
                _log_transition(job.id, JobState.PROCESSING, JobState.COMPLETED,
                                f"(exit_code={result.exit_code})")
            else:
                logger.warning("Job %s was no longer processing; result discarded", job.id)
            return

        updated = self.db.schedule_retry_or_dead_letter(
            job, f"exit {result.exit_code}", exit_code=result.exit_code, output=result.output
        )
        if updated is None:
            logger.warning("Job %s was no longer processing; failure discarded", job.id)
        elif updated.state == JobState.PENDING:
            _log_transition(job.id, JobState.PROCESSING, JobState.PENDING,
                            f"(attempts={updated.attempts}/{updated.max_retries}, "
                            f"exit_code={result.exit_code}, retry_at={updated.run_at})")
        else:
            _log_transition(job.id, JobState.PROCESSING, JobState.DEAD,
                            f"(attempts={updated.attempts}, exit_code={result.exit_code})")


def run_worker_process(settings, worker_id=None):
    """Entry point for one worker OS process; SIGINT/SIGTERM request a graceful stop."""
    configure_logging(settings.log_level)
    stop_event = threading.Event()

    def _handler(signum, frame):
        logger.info("Received %s, finishing current job", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)

    with Storage(settings.db_path) as storage:
        Worker(
            storage,
            worker_id=worker_id,
            poll_interval=settings.poll_interval,
            heartbeat_interval=settings.heartbeat_interval,
            stop_event=stop_event,
        ).run()
