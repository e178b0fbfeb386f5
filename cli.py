# cli.py
import json
import multiprocessing
import signal

import click

from config import Settings, configure_logging, get_defaults, normalize_key, set_config
from errors import QueueError
from jobs import enqueue as enqueue_job
from jobs import new_id, parse_job_spec
from models import JOB_STATES
from storage import Storage
from supervisor import run_supervisor_process
from worker import run_worker_process


def _open(ctx):
    return Storage(ctx.obj.db_path)


def _fail(message):
    click.echo(f"❌ {message}", err=True)
    click.get_current_context().exit(1)


def _dump(data):
    click.echo(json.dumps(data, indent=2))


@click.group()
@click.option("--db", "db_path", default=None, envvar="QUEUECTL_DB_PATH",
              help="Path to the SQLite queue database")
@click.pass_context
def cli(ctx, db_path):
    """queuectl - background job queue with retries, DLQ and crash recovery"""
    ctx.obj = Settings.from_env(db_path=db_path)
    configure_logging(ctx.obj.log_level)


# ---------------- Enqueue ----------------
@cli.command()
@click.argument("job_spec")
@click.option("--id", "job_id", default=None, help="Job ID (generated when omitted)")
@click.option("--max-retries", default=None, type=int, help="Overrides the max_retries config default")
@click.option("--backoff-base", default=None, type=float, help="Overrides the backoff_base config default")
@click.option("--delay", default=None, type=float, help="Seconds before the job becomes eligible")
@click.pass_context
def enqueue(ctx, job_spec, job_id, max_retries, backoff_base, delay):
    """Enqueue a job given as a JSON object or a plain shell command"""
    with _open(ctx) as db:
        try:
            spec = parse_job_spec(job_spec)
            job = enqueue_job(
                db,
                spec["command"],
                job_id=job_id or spec.get("id"),
                max_retries=max_retries if max_retries is not None else spec.get("max_retries"),
                backoff_base=backoff_base if backoff_base is not None else spec.get("backoff_base"),
                delay_seconds=delay,
            )
        except QueueError as e:
            _fail(f"Failed to enqueue job: {e}")
    click.echo(f"✅ Enqueued job: {job.id}")


# ---------------- Workers ----------------
@cli.group()
def worker():
    """Worker process management"""
    pass


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt


@worker.command("start")
@click.option("--count", default=1, type=click.IntRange(min=1), help="Number of worker processes")
@click.pass_context
def worker_start(ctx, count):
    """Start worker processes; Ctrl+C or SIGTERM stops them after their current job"""
    settings = ctx.obj
    processes = []
    for _ in range(count):
        worker_id = new_id("w_")
        p = multiprocessing.Process(
            target=run_worker_process, args=(settings, worker_id), name=worker_id
        )
        p.start()
        processes.append(p)
        click.echo(f"🚀 Started {worker_id} (pid={p.pid})")

    signal.signal(signal.SIGTERM, _raise_interrupt)
    click.echo("Press Ctrl+C to stop workers gracefully.")
    try:
        for p in processes:
            p.join()
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping workers ...")
        for p in processes:
            if p.is_alive():
                p.terminate()
        for p in processes:
            p.join()
    click.echo("✅ Workers stopped.")


@cli.command()
@click.pass_context
def workers(ctx):
    """List registered worker records (stale ones stay until a recovery pass prunes them)"""
    with _open(ctx) as db:
        _dump([w.to_dict() for w in db.list_workers()])


# ---------------- Supervisor ----------------
@cli.command()
@click.option("--once", is_flag=True, help="Run a single recovery pass and exit")
@click.pass_context
def supervisor(ctx, once):
    """Detect jobs orphaned by dead workers and mark them failed"""
    recovered = run_supervisor_process(ctx.obj, once=once)
    if once:
        click.echo(f"Marked {recovered} job(s) as failed.")


# ---------------- Inspection ----------------
@cli.command()
@click.pass_context
def status(ctx):
    """Show job counts per state and active workers"""
    with _open(ctx) as db:
        _dump(db.count_by_state())


@cli.command(name="list")
@click.option("--state", default="pending", type=click.Choice(JOB_STATES), help="Filter jobs by state")
@click.option("--limit", default=20, type=int, help="Max jobs")
@click.pass_context
def list_jobs(ctx, state, limit):
    """List jobs by state"""
    with _open(ctx) as db:
        _dump([job.to_dict() for job in db.list_jobs(state, limit)])


@cli.command()
@click.argument("job_id")
@click.pass_context
def inspect(ctx, job_id):
    """Inspect a single job by ID"""
    with _open(ctx) as db:
        job = db.get_job(job_id)
    if job is None:
        _fail(f"Job {job_id} not found")
    _dump(job.to_dict())


# ---------------- Dead Letter Queue ----------------
@cli.group()
def dlq():
    """Dead Letter Queue operations"""
    pass


@dlq.command("list")
@click.option("--limit", default=50, type=int, help="Max jobs")
@click.pass_context
def dlq_list(ctx, limit):
    """List dead jobs"""
    with _open(ctx) as db:
        _dump([job.to_dict() for job in db.list_dead_letter(limit)])


@dlq.command("retry")
@click.argument("job_id")
@click.pass_context
def dlq_retry(ctx, job_id):
    """Move a dead job back to pending with attempts reset"""
    with _open(ctx) as db:
        try:
            db.requeue_from_dead_letter(job_id)
        except QueueError as e:
            _fail(str(e))
    click.echo(f"♻️ Retried job from DLQ: {job_id}")


@cli.command("requeue-failed")
@click.argument("job_id")
@click.pass_context
def requeue_failed(ctx, job_id):
    """Move a job failed by worker recovery back to pending"""
    with _open(ctx) as db:
        try:
            db.requeue_failed(job_id)
        except QueueError as e:
            _fail(str(e))
    click.echo(f"♻️ Requeued failed job: {job_id}")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Job policy defaults (max-retries, backoff-base)"""
    pass


@config.command("get")
@click.argument("key", required=False)
@click.pass_context
def config_get(ctx, key):
    """Show current defaults, or a single key"""
    with _open(ctx) as db:
        defaults = get_defaults(db)
    if key is None:
        _dump(defaults)
        return
    key = normalize_key(key)
    if key not in defaults:
        _fail(f"Unknown config key: {key}")
    click.echo(f"{key}={defaults[key]}")


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set max-retries or backoff-base"""
    with _open(ctx) as db:
        try:
            defaults = set_config(db, key, value)
        except QueueError as e:
            _fail(str(e))
    _dump(defaults)


@config.command("list")
@click.pass_context
def config_list(ctx):
    """List stored config entries"""
    with _open(ctx) as db:
        rows = db.list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Dashboard ----------------
@cli.command()
@click.option("--host", default="127.0.0.1")
@click.option("--port", default=8000, type=int)
@click.pass_context
def dashboard(ctx, host, port):
    """Serve the read-only web dashboard"""
    import uvicorn
    from dashboard import create_app

    db = _open(ctx)
    try:
        uvicorn.run(create_app(db), host=host, port=port)
    finally:
        db.close()


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
