import json

import pytest
from click.testing import CliRunner

from cli import cli
from models import JobState
from storage import Storage


@pytest.fixture()
def run(db_path):
    runner = CliRunner()

    def _run(*args):
        return runner.invoke(cli, ["--db", str(db_path), *args])

    return _run


def test_enqueue_plain_command_and_inspect(run):
    result = run("enqueue", "echo hi", "--id", "j1")
    assert result.exit_code == 0, result.output
    assert "Enqueued job: j1" in result.output

    result = run("inspect", "j1")
    assert result.exit_code == 0
    job = json.loads(result.output)
    assert job["command"] == "echo hi"
    assert job["state"] == JobState.PENDING
    assert job["max_retries"] == 3


def test_enqueue_json_spec(run, db_path):
    result = run("enqueue", '{"id": "js", "command": "ls", "max_retries": 1, "backoff_base": 4}')
    assert result.exit_code == 0, result.output

    with Storage(db_path) as db:
        job = db.get_job("js")
    assert job.max_retries == 1
    assert job.backoff_base == 4


def test_enqueue_rejects_empty_command_and_duplicates(run):
    assert run("enqueue", " ").exit_code == 1

    assert run("enqueue", "echo hi", "--id", "j1").exit_code == 0
    result = run("enqueue", "echo hi", "--id", "j1")
    assert result.exit_code == 1
    assert "already exists" in result.output


def test_inspect_missing_job_reports_not_found(run):
    result = run("inspect", "nope")

    assert result.exit_code == 1
    assert "not found" in result.output


def test_status_and_list(run):
    run("enqueue", "echo a", "--id", "a")
    run("enqueue", "echo b", "--id", "b")

    status = json.loads(run("status").output)
    assert status["pending"] == 2
    assert status["total"] == 2
    assert status["workers"] == 0

    listed = json.loads(run("list", "--state", "pending").output)
    assert {job["id"] for job in listed} == {"a", "b"}
    assert json.loads(run("list", "--state", "dead").output) == []


def test_dlq_list_and_retry(run, db_path):
    with Storage(db_path) as db:
        db.insert_job("d1", "false", max_retries=0, backoff_base=2)
        job = db.claim_next("w1")
        db.schedule_retry_or_dead_letter(job, "exit 1", exit_code=1)

    dead = json.loads(run("dlq", "list").output)
    assert [job["id"] for job in dead] == ["d1"]

    result = run("dlq", "retry", "d1")
    assert result.exit_code == 0
    with Storage(db_path) as db:
        job = db.get_job("d1")
    assert job.state == JobState.PENDING
    assert job.attempts == 0

    result = run("dlq", "retry", "d1")
    assert result.exit_code == 1
    assert "expected dead" in result.output


def test_requeue_failed(run, db_path):
    with Storage(db_path) as db:
        db.insert_job("f1", "sleep 1", max_retries=3, backoff_base=2)
        db.claim_next("w1")
        db.force_fail(["f1"], "job timed out or worker stale")

    assert run("requeue-failed", "f1").exit_code == 0
    assert run("requeue-failed", "f1").exit_code == 1


def test_config_commands(run):
    assert json.loads(run("config", "get").output) == {"max_retries": 3, "backoff_base": 2}

    result = run("config", "set", "max-retries", "5")
    assert result.exit_code == 0
    assert json.loads(result.output)["max_retries"] == 5
    assert run("config", "get", "max-retries").output.strip() == "max_retries=5"
    assert "max_retries=5" in run("config", "list").output

    result = run("config", "set", "poll", "1")
    assert result.exit_code == 1
    assert "Unknown config key" in result.output


def test_supervisor_single_pass(run):
    result = run("supervisor", "--once")

    assert result.exit_code == 0, result.output
    assert "Marked 0 job(s) as failed." in result.output


def test_workers_listing(run, db_path):
    with Storage(db_path) as db:
        db.upsert_heartbeat("w_abc", 99)

    workers = json.loads(run("workers").output)
    assert [w["id"] for w in workers] == ["w_abc"]
