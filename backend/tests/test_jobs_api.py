"""Tests for the job queue operator API."""

import uuid

import pytest
from fastapi.testclient import TestClient

from recovery.core.retry import breakers
from recovery.main import app
from recovery.models.job import JobType
from recovery.services.job_queue import JobQueue


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def dead_job(db_session, t0):
    queue = JobQueue(db_session)
    job_id = queue.enqueue(JobType.PROCESS_EVENT, {"event_id": uuid.uuid4()}, scheduled_at=t0)
    [job] = queue.claim_batch(1, t0)
    queue.fail(job, "PermanentError: Event not found", retryable=False, now=t0)
    return job_id


class TestDeadLetter:
    def test_list(self, client, dead_job, db_session, t0):
        """Test only dead-lettered jobs are listed."""
        JobQueue(db_session).enqueue(JobType.PROCESS_EVENT, {"event_id": uuid.uuid4()}, scheduled_at=t0)

        response = client.get("/jobs/dead-letter")

        assert response.status_code == 200
        data = response.json()
        assert [job["id"] for job in data] == [str(dead_job)]
        assert data[0]["status"] == "dead_letter"
        assert data[0]["attempts"] == 1
        assert data[0]["last_error"] == "PermanentError: Event not found"

    def test_list_pagination_validated(self, client):
        """Test out-of-range paging parameters are rejected."""
        assert client.get("/jobs/dead-letter?limit=0").status_code == 422
        assert client.get("/jobs/dead-letter?skip=-1").status_code == 422


class TestReplay:
    def test_replay(self, client, dead_job):
        """Test replay enqueues a new pending copy of the job."""
        response = client.post(f"/jobs/{dead_job}/replay")

        assert response.status_code == 200
        data = response.json()
        assert data["replayed_job_id"] == str(dead_job)
        assert data["job_id"] != str(dead_job)

        stats = client.get("/jobs/stats").json()["counts"]
        assert stats["pending"] == 1
        assert stats["dead_letter"] == 1

    def test_replay_not_dead(self, client, db_session, t0):
        """Test a job that is not dead-lettered cannot be replayed."""
        job_id = JobQueue(db_session).enqueue(
            JobType.PROCESS_EVENT, {"event_id": uuid.uuid4()}, scheduled_at=t0
        )

        assert client.post(f"/jobs/{job_id}/replay").status_code == 409

    def test_replay_not_found(self, client):
        """Test replaying an unknown job."""
        response = client.post(f"/jobs/{uuid.uuid4()}/replay")
        assert response.status_code == 404
        assert response.json()["detail"] == "Job not found"


class TestStats:
    def test_stats(self, client, dead_job):
        """Test queue counts and circuit states are reported."""
        breakers.get("billing-api")

        response = client.get("/jobs/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["counts"] == {
            "pending": 0,
            "processing": 0,
            "completed": 0,
            "dead_letter": 1,
            "cancelled": 0,
        }
        assert data["circuits"] == {"billing-api": "closed"}

