# storage.py
import os
import sqlite3
from contextlib import contextmanager
from datetime import timedelta

from errors import DuplicateJobError, InvalidJobStateError, JobNotFoundError
from models import JOB_STATES, Job, JobState, WorkerRecord, to_iso, utc_now

# Upper bound for a single retry delay (one year)
MAX_BACKOFF_SECONDS = 365 * 24 * 3600.0


def backoff_delay(backoff_base, attempts):
    """Seconds to wait before retry number `attempts` (base ** attempts)."""
    try:
        delay = float(backoff_base) ** attempts
    except OverflowError:
        return MAX_BACKOFF_SECONDS
    return min(delay, MAX_BACKOFF_SECONDS)


class Storage:
    def __init__(self, db_path="queue.db", clock=None):
        self.db_path = str(db_path)
        self.clock = clock

        parent = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(parent, exist_ok=True)

        # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE
        self.conn = sqlite3.connect(
            self.db_path, timeout=30.0, isolation_level=None, check_same_thread=False
        )
        self.conn.row_factory = sqlite3.Row

        # Better concurrency for multiple worker processes
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")

        self._init_schema()

    def _init_schema(self):
        self.conn.executescript("""
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            command TEXT NOT NULL,
            state TEXT NOT NULL
                CHECK (state IN ('pending','processing','completed','failed','dead')),
            attempts INTEGER NOT NULL DEFAULT 0,
            max_retries INTEGER NOT NULL DEFAULT 3,
            backoff_base REAL NOT NULL DEFAULT 2,
            run_at TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            locked_by TEXT,
            last_error TEXT,
            last_exit_code INTEGER,
            output TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_jobs_state_run_at ON jobs(state, run_at);
        CREATE INDEX IF NOT EXISTS idx_jobs_locked_by ON jobs(locked_by);

        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS workers (
            id TEXT PRIMARY KEY,
            pid INTEGER,
            started_at TEXT NOT NULL,
            last_heartbeat TEXT NOT NULL
        );
        """)

    def close(self):
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def now(self):
        return self.clock() if self.clock else utc_now()

    @contextmanager
    def _transaction(self):
        # IMMEDIATE takes the write lock up front, so a read-then-update
        # inside the block cannot interleave with another process
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield self.conn
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")

    def _fetch_job(self, conn, job_id):
        row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        return Job.from_row(row) if row else None

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        row = self.conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        return row["value"] if row else default

    def set_config(self, key, value):
        self.conn.execute("""
            INSERT INTO config (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
        """, (key, str(value), to_iso(self.now())))

    def list_config(self):
        rows = self.conn.execute("SELECT key, value, updated_at FROM config ORDER BY key").fetchall()
        return [dict(r) for r in rows]

    # ---------------- Job transitions ----------------
    def insert_job(self, job_id, command, max_retries, backoff_base, run_at=None):
        now = self.now()
        now_iso = to_iso(now)
        run_at_iso = to_iso(run_at or now)
        with self._transaction() as conn:
            if conn.execute("SELECT 1 FROM jobs WHERE id=?", (job_id,)).fetchone():
                raise DuplicateJobError(job_id)
            conn.execute("""
                INSERT INTO jobs (id, command, state, attempts, max_retries, backoff_base,
                                  run_at, created_at, updated_at)
                VALUES (?, ?, 'pending', 0, ?, ?, ?, ?, ?)
            """, (job_id, command, max_retries, backoff_base, run_at_iso, now_iso, now_iso))
            return self._fetch_job(conn, job_id)

    def claim_next(self, worker_id):
        """
        Atomically claim the earliest eligible pending job for `worker_id`.
        Returns the claimed Job (already in 'processing') or None.
        """
        now_iso = to_iso(self.now())
        with self._transaction() as conn:
            row = conn.execute("""
                SELECT id FROM jobs
                WHERE state='pending' AND run_at <= ?
                ORDER BY run_at ASC, created_at ASC, rowid ASC
                LIMIT 1
            """, (now_iso,)).fetchone()
            if row is None:
                return None

            conn.execute("""
                UPDATE jobs
                SET state='processing', locked_by=?, updated_at=?
                WHERE id=? AND state='pending'
            """, (worker_id, now_iso, row["id"]))
            return self._fetch_job(conn, row["id"])

    def complete(self, job_id, output, exit_code=0):
        """Mark a processing job completed. No-op (returns False) for any other state."""
        updated = self.conn.execute("""
            UPDATE jobs
            SET state='completed', output=?, last_exit_code=?, locked_by=NULL, updated_at=?
            WHERE id=? AND state='processing'
        """, (output, exit_code, to_iso(self.now()), job_id)).rowcount
        return updated == 1

    def schedule_retry_or_dead_letter(self, job, error_message, exit_code=None, output=None):
        """
        Count a failed attempt. Reschedules the job with exponential backoff
        while attempts <= max_retries, otherwise moves it to the DLQ.
        Returns the updated Job, or None when the job is no longer processing.
        """
        job_id = job.id if isinstance(job, Job) else job
        now = self.now()
        now_iso = to_iso(now)
        with self._transaction() as conn:
            current = self._fetch_job(conn, job_id)
            if current is None or current.state != JobState.PROCESSING:
                return None

            attempts = current.attempts + 1
            if attempts <= current.max_retries:
                run_at = now + timedelta(seconds=backoff_delay(current.backoff_base, attempts))
                conn.execute("""
                    UPDATE jobs
                    SET state='pending', attempts=?, run_at=?, last_error=?, last_exit_code=?,
                        output=COALESCE(?, output), locked_by=NULL, updated_at=?
                    WHERE id=?
                """, (attempts, to_iso(run_at), error_message, exit_code, output, now_iso, job_id))
            else:
                conn.execute("""
                    UPDATE jobs
                    SET state='dead', attempts=?, last_error=?, last_exit_code=?,
                        output=COALESCE(?, output), locked_by=NULL, updated_at=?
                    WHERE id=?
                """, (attempts, error_message, exit_code, output, now_iso, job_id))
            return self._fetch_job(conn, job_id)

    def force_fail(self, job_ids, reason, owners=None):
        """Bulk-move still-processing jobs to 'failed'. Returns how many moved.

        `owners` maps job id -> the locked_by value seen when the job was
        selected. A job listed there is only failed if it still has that
        owner, so a job released and re-claimed in between is left alone.
        """
        job_ids = list(job_ids)
        if not job_ids:
            return 0
        now_iso = to_iso(self.now())
        if owners is None:
            placeholders = ",".join("?" for _ in job_ids)
            return self.conn.execute(f"""
                UPDATE jobs
                SET state='failed', last_error=?, locked_by=NULL, updated_at=?
                WHERE state='processing' AND id IN ({placeholders})
            """, (reason, now_iso, *job_ids)).rowcount

        moved = 0
        with self._transaction() as conn:
            for job_id in job_ids:
                moved += conn.execute("""
                    UPDATE jobs
                    SET state='failed', last_error=?, locked_by=NULL, updated_at=?
                    WHERE state='processing' AND id=? AND locked_by IS ?
                """, (reason, now_iso, job_id, owners.get(job_id))).rowcount
        return moved

    def requeue_from_dead_letter(self, job_id):
        return self._requeue(job_id, JobState.DEAD)

    def requeue_failed(self, job_id):
        return self._requeue(job_id, JobState.FAILED)

    def _requeue(self, job_id, expected_state):
        now_iso = to_iso(self.now())
        with self._transaction() as conn:
            current = self._fetch_job(conn, job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            if current.state != expected_state:
                raise InvalidJobStateError(job_id, current.state, expected_state)
            conn.execute("""
                UPDATE jobs
                SET state='pending', attempts=0, locked_by=NULL, last_error=NULL,
                    run_at=?, updated_at=?
                WHERE id=?
            """, (now_iso, now_iso, job_id))
            return self._fetch_job(conn, job_id)

    # ---------------- Worker records ----------------
    def upsert_heartbeat(self, worker_id, pid=None):
        now_iso = to_iso(self.now())
        self.conn.execute("""
            INSERT INTO workers (id, pid, started_at, last_heartbeat)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET last_heartbeat=excluded.last_heartbeat, pid=excluded.pid
        """, (worker_id, pid, now_iso, now_iso))

    def remove_worker(self, worker_id):
        return self.conn.execute("DELETE FROM workers WHERE id=?", (worker_id,)).rowcount == 1

    def get_worker(self, worker_id):
        row = self.conn.execute("SELECT * FROM workers WHERE id=?", (worker_id,)).fetchone()
        return WorkerRecord.from_row(row) if row else None

    def list_workers(self):
        rows = self.conn.execute("SELECT * FROM workers ORDER BY started_at").fetchall()
        return [WorkerRecord.from_row(r) for r in rows]

    def prune_workers_older_than(self, cutoff):
        """Delete worker records whose last heartbeat is before `cutoff`; returns their ids."""
        cutoff_iso = to_iso(cutoff)
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM workers WHERE last_heartbeat < ?", (cutoff_iso,)
            ).fetchall()
            conn.execute("DELETE FROM workers WHERE last_heartbeat < ?", (cutoff_iso,))
        return [r["id"] for r in rows]

    # ---------------- Read queries ----------------
    def count_by_state(self):
        counts = {state: 0 for state in JOB_STATES}
        for row in self.conn.execute("SELECT state, COUNT(*) AS c FROM jobs GROUP BY state"):
            counts[row["state"]] = row["c"]
        counts["total"] = sum(counts[s] for s in JOB_STATES)
        counts["workers"] = self.conn.execute("SELECT COUNT(*) AS c FROM workers").fetchone()["c"]
        return counts

    def list_jobs(self, state=None, limit=50):
        if state:
            rows = self.conn.execute(
                "SELECT * FROM jobs WHERE state=? ORDER BY updated_at DESC LIMIT ?", (state, limit)
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM jobs ORDER BY updated_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [Job.from_row(r) for r in rows]

    def get_job(self, job_id):
        return self._fetch_job(self.conn, job_id)

    def list_dead_letter(self, limit=50):
        return self.list_jobs(JobState.DEAD, limit)

    def list_stuck_processing(self, older_than):
        """Processing jobs whose last update is before `older_than`."""
        rows = self.conn.execute("""
            SELECT * FROM jobs
            WHERE state='processing' AND updated_at < ?
            ORDER BY updated_at ASC
        """, (to_iso(older_than),)).fetchall()
        return [Job.from_row(r) for r in rows]
