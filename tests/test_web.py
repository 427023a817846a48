"""
Management API tests using the Flask test client.
"""

import pytest
from conftest import make_message

from mailbrief.exceptions import FetchError, MailAuthError
from mailbrief.web import create_app


@pytest.fixture
def client(pipeline):
    app = create_app(pipeline=pipeline)
    app.config["TESTING"] = True
    return app.test_client()


def _run_with_digest(client, mail_provider) -> dict:
    mail_provider.messages = [make_message(subject="Sign contract", is_important=True)]
    response = client.post("/api/users/u1/process")
    assert response.status_code == 200
    return response.get_json()


def test_health(client) -> None:
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok", "service": "MailBrief"}


def test_user_upsert_and_validation(client) -> None:
    response = client.put("/api/users/u2", json={"email": "u2@co.com", "plan": "pro"})
    assert response.status_code == 200
    assert client.get("/api/users/u2").get_json()["plan"] == "pro"

    assert client.put("/api/users/u3", json={"plan": "gold"}).status_code == 400
    assert client.get("/api/users/u3").status_code == 404


def test_profile_crud(client, user) -> None:
    assert client.get("/api/users/u1/profile").status_code == 404

    response = client.put("/api/users/u1/profile", json={"role": "engineer", "keywords": ["Deploy", "deploy "]})
    assert response.status_code == 200
    assert response.get_json()["keywords"] == ["deploy"]
    assert client.get("/api/users/u1/profile").get_json()["role"] == "engineer"

    assert client.put("/api/users/u1/profile", json={"minimum_email_length": 10}).status_code == 400

    assert client.delete("/api/users/u1/profile").status_code == 200
    assert client.delete("/api/users/u1/profile").status_code == 404


def test_profile_requires_user(client) -> None:
    assert client.put("/api/users/ghost/profile", json={}).status_code == 404


def test_process_unknown_user(client) -> None:
    response = client.post("/api/users/ghost/process")
    assert response.status_code == 404
    assert response.get_json()["success"] is False


@pytest.mark.parametrize(
    "error, kind",
    [(MailAuthError("login rejected"), "mail_auth"), (FetchError("IMAP down"), "mail_fetch")],
)
def test_process_provider_errors(client, mail_provider, user, error, kind) -> None:
    mail_provider.error = error
    response = client.post("/api/users/u1/process/on-demand")
    assert response.status_code == 502
    assert response.get_json()["kind"] == kind


def test_process_rejects_invalid_options(client, user) -> None:
    assert client.post("/api/users/u1/process", json={"max_results": 0}).status_code == 400


def test_process_already_running(client, pipeline, user) -> None:
    pipeline.tracker.begin("u1")
    response = client.post("/api/users/u1/process")

    assert response.status_code == 409
    assert response.get_json()["status"] == "already_processing"
    assert client.get("/api/users/u1/status").get_json()["state"] == "processing"


def test_process_and_read_digest(client, mail_provider, user) -> None:
    result = _run_with_digest(client, mail_provider)
    assert result["status"] == "completed"
    assert result["summarized_count"] == 1

    latest = client.get("/api/users/u1/digests/latest").get_json()
    assert latest["id"] == result["digest_id"]
    assert client.get("/api/users/u1/digests/latest?type=on-demand").status_code == 404
    assert client.get("/api/users/u1/digests/latest?type=weekly").status_code == 400
    assert client.get("/api/users/u1/status").get_json()["state"] == "idle"


def test_action_items(client, mail_provider, user) -> None:
    digest_id = _run_with_digest(client, mail_provider)["digest_id"]

    items = client.get("/api/users/u1/action-items").get_json()["action_items"]
    assert items[0]["digest_id"] == digest_id
    assert items[0]["description"].startswith("Reply to")

    url = f"/api/users/u1/digests/{digest_id}/action-items/0/complete"
    assert client.post(url).get_json()["completed"] is True
    assert client.post(url).status_code == 409
    assert client.get("/api/users/u1/action-items").get_json()["action_items"] == []

    assert client.post(f"/api/users/other/digests/{digest_id}/action-items/0/complete").status_code == 404
    assert client.post(f"/api/users/u1/digests/{digest_id}/action-items/9/complete").status_code == 404
    assert client.get("/api/users/u1/action-items?limit=abc").status_code == 400


def test_usage_and_errors(client, mail_provider, user) -> None:
    _run_with_digest(client, mail_provider)

    body = client.get("/api/users/u1/usage").get_json()
    assert body["plan"] == "free"
    assert body["usage"]["emails_processed"] == 1
    assert body["usage"]["api_calls"] == 2
    assert body["stats"]["total_digests"] == 1
    assert client.get("/api/users/u1/errors").get_json() == {"errors": []}


def test_scheduler_endpoints_without_job(client) -> None:
    assert client.get("/api/scheduler/status").get_json()["enabled"] is False
    assert client.post("/api/scheduler/run").status_code == 503
