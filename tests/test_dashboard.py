import pytest
from fastapi.testclient import TestClient

from dashboard import create_app


@pytest.fixture()
def client(db):
    return TestClient(create_app(db))


def test_home_lists_counts_and_jobs(client, db):
    db.insert_job("j1", "echo <b>hi</b>", max_retries=3, backoff_base=2)

    response = client.get("/")

    assert response.status_code == 200
    assert "j1" in response.text
    assert "echo &lt;b&gt;hi&lt;/b&gt;" in response.text


def test_status_json(client, db):
    db.insert_job("j1", "echo hi", max_retries=3, backoff_base=2)

    data = client.get("/status.json").json()

    assert data["pending"] == 1
    assert data["total"] == 1


def test_job_detail_and_output(client, db):
    db.insert_job("j1", "echo hi", max_retries=3, backoff_base=2)
    db.claim_next("w1")
    db.complete("j1", "hi\n", 0)

    assert "completed" in client.get("/job/j1").text
    output = client.get("/job/j1/output")
    assert output.status_code == 200
    assert output.text == "hi\n"


def test_missing_job_is_404(client):
    assert client.get("/job/nope").status_code == 404
    assert client.get("/job/nope/output").status_code == 404


def test_dlq_and_workers_pages(client, db):
    db.insert_job("d1", "false", max_retries=0, backoff_base=2)
    db.schedule_retry_or_dead_letter(db.claim_next("w1"), "exit 1")
    db.upsert_heartbeat("w1", 7)

    assert "d1" in client.get("/dlq").text
    assert "w1" in client.get("/workers").text
