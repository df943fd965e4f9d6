from pathlib import Path

import httpx
from fastapi.testclient import TestClient

from dockyard.models.webhook import WebhookEvent
from tests.support.api import create_project, harness_app, wait_for_status
from tests.support.harness import build_harness, build_report, push_event


def _post_source(
    client: TestClient, event: WebhookEvent, github_event: str = "push"
) -> httpx.Response:
    return client.post(
        f"/api/v1/webhooks/source/{event.project_id}",
        content=event.raw_payload,
        headers={
            "Content-Type": "application/json",
            "X-GitHub-Event": github_event,
            "X-Hub-Signature-256": event.signature or "",
        },
    )


def _post_build(
    client: TestClient, event: WebhookEvent, signature: str | None = None
) -> httpx.Response:
    if signature is None:
        signature = event.signature or ""
    return client.post(
        f"/api/v1/webhooks/build/{event.project_id}",
        content=event.raw_payload,
        headers={
            "Content-Type": "application/json",
            "X-Dockyard-Signature": signature,
        },
    )


def test_signed_push_starts_a_deploy(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    with TestClient(harness_app(harness)) as client:
        project_id = create_project(client, harness)

        response = _post_source(client, push_event(project_id))

        assert response.status_code == 202
        assert response.json()["status"] == "accepted"
        assert response.json()["attempt"] == 1
        wait_for_status(client, project_id, "deployed")


def test_bad_signature_is_unauthorized(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    with TestClient(harness_app(harness)) as client:
        project_id = create_project(client, harness)

        response = _post_source(client, push_event(project_id, secret="wrong"))

        assert response.status_code == 401
        events = client.get(
            f"/api/v1/projects/{project_id}/events", params={"event_type": "webhook.rejected"}
        ).json()["items"]
        assert len(events) == 1
        assert harness.build_system.requests == []


def test_other_branch_and_event_are_ignored(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    with TestClient(harness_app(harness)) as client:
        project_id = create_project(client, harness)

        branch = _post_source(client, push_event(project_id, branch="feature"))
        ping = _post_source(client, push_event(project_id), github_event="ping")

        assert branch.status_code == 200
        assert branch.json() == {"status": "ignored", "attempt": None, "reason": "branch mismatch"}
        assert ping.status_code == 200
        assert ping.json()["reason"] == "unsupported event"
        status = client.get(f"/api/v1/projects/{project_id}/deploy/status").json()
        assert status["status"] == "idle"


def test_build_reports(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    with TestClient(harness_app(harness)) as client:
        project_id = create_project(client, harness)

        rejected = _post_build(client, build_report(project_id, "failure"), signature="sha256=00")
        assert rejected.status_code == 401

        succeeded = _post_build(client, build_report(project_id, "success"))
        assert succeeded.status_code == 200
        assert succeeded.json()["reason"] == "build succeeded"

        failed = _post_build(client, build_report(project_id, "failure"))
        assert failed.status_code == 202

        status = wait_for_status(client, project_id, "failed")
        assert status["last_error"] == "build_failed"
