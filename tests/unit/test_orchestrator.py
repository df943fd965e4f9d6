from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from dockyard.core.dispatcher import BRANCH_MISMATCH, BUILD_IN_PROGRESS
from dockyard.core.errors import ErrorKind, NoSnapshotAvailable, ProjectNotFound, VerificationFailed
from dockyard.core.orchestrator import BUILD_SUCCEEDED, NO_SNAPSHOT
from dockyard.models.events import EventType
from dockyard.models.project import ProjectStatus
from tests.support.harness import build_harness, build_report, push_event


@pytest.mark.asyncio
async def test_push_deploys_after_third_probe_and_prunes_snapshots(tmp_path: Path) -> None:
    harness = build_harness(tmp_path, retention_count=2)
    project = await harness.add_project()
    for _ in range(2):
        await harness.deploy(project)
    first_instance = harness.runtime.named(project.container_name)
    assert first_instance is not None
    harness.probe.overrides[harness.artifact(project, 3)] = 3

    outcome = await harness.orchestrator.handle_source_webhook(push_event(project.id))
    assert outcome.accepted is True
    assert outcome.attempt == 3
    await harness.orchestrator.wait_for(project.id)

    stored = await harness.reload(project)
    assert stored.status is ProjectStatus.DEPLOYED
    assert stored.rolled_back is False
    assert stored.attempt_seq == 3

    live = harness.runtime.named(project.container_name)
    assert live is not None
    assert live.image == harness.artifact(project, 3)
    assert first_instance.id not in harness.runtime.instances
    assert harness.runtime.named(project.previous_container_name) is None
    assert harness.probe.counts[harness.artifact(project, 3)] == 3

    snapshots = await harness.retention.list(project.id)
    assert [s.artifact for s in snapshots] == [
        harness.artifact(project, 2),
        harness.artifact(project, 3),
    ]
    probes = await harness.store.list_events(
        project_id=project.id, event_type=EventType.HEALTH_PROBE
    )
    assert probes[-1].payload == {"attempt": 3, "probes": 3, "healthy": True}


@pytest.mark.asyncio
async def test_health_timeout_rolls_back_to_prior_snapshot(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()
    await harness.deploy(project)
    harness.probe.overrides[harness.artifact(project, 2)] = None

    stored = await harness.deploy(project)

    assert stored.status is ProjectStatus.DEPLOYED
    assert stored.rolled_back is True
    assert stored.last_error is None
    images = [i.image for i in harness.runtime.instances.values()]
    assert images == [harness.artifact(project, 1)]
    assert harness.sleeper.calls.count(2.0) == 29
    assert harness.build_system.discarded == [harness.artifact(project, 2)]

    changes = await harness.store.list_events(
        project_id=project.id, event_type=EventType.STATE_CHANGED
    )
    path = [(e.payload["from"], e.payload["to"]) for e in changes if e.payload["attempt"] == 2]
    assert path == [
        ("deployed", "building"),
        ("building", "health_checking"),
        ("health_checking", "failed"),
        ("failed", "rolling_back"),
        ("rolling_back", "deployed"),
    ]
    assert len(await harness.retention.list(project.id)) == 1


@pytest.mark.asyncio
async def test_failed_restore_start_ends_failed_without_pruning(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()
    await harness.deploy(project)
    harness.probe.overrides[harness.artifact(project, 2)] = None
    harness.runtime.fail_start_artifacts.add(harness.artifact(project, 1))

    stored = await harness.deploy(project)

    assert stored.status is ProjectStatus.FAILED
    assert stored.last_error is ErrorKind.RESTORE_FAILED
    assert len(harness.alerter.alerts) == 1
    assert harness.alerter.alerts[0][:2] == (project.id, 2)
    pruned = await harness.store.list_events(
        project_id=project.id, event_type=EventType.SNAPSHOT_PRUNED
    )
    assert pruned == []
    assert len(await harness.retention.list(project.id)) == 1


@pytest.mark.asyncio
async def test_branch_mismatch_is_ignored_without_build(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()

    outcome = await harness.orchestrator.handle_source_webhook(
        push_event(project.id, branch="develop")
    )

    assert outcome.accepted is False
    assert outcome.reason == BRANCH_MISMATCH
    assert harness.build_system.requests == []
    stored = await harness.reload(project)
    assert stored.status is ProjectStatus.IDLE
    assert stored.attempt_seq == 0
    ignored = await harness.store.list_events(
        project_id=project.id, event_type=EventType.WEBHOOK_IGNORED
    )
    assert ignored[0].payload["reason"] == BRANCH_MISMATCH


@pytest.mark.asyncio
async def test_second_push_while_building_is_ignored(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()
    harness.build_system.gate = asyncio.Event()

    first = await harness.orchestrator.handle_source_webhook(push_event(project.id))
    assert (await harness.reload(project)).status is ProjectStatus.BUILDING

    second = await harness.orchestrator.handle_source_webhook(push_event(project.id))
    assert second.accepted is False
    assert second.reason == BUILD_IN_PROGRESS

    harness.build_system.gate.set()
    await harness.orchestrator.wait_for(project.id)

    stored = await harness.reload(project)
    assert first.attempt == 1
    assert stored.status is ProjectStatus.DEPLOYED
    assert stored.attempt_seq == 1
    assert len(harness.build_system.requests) == 1


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected_and_audited(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()

    with pytest.raises(VerificationFailed):
        await harness.orchestrator.handle_source_webhook(
            push_event(project.id, secret="wrong-secret")
        )

    assert (await harness.reload(project)).status is ProjectStatus.IDLE
    rejected = await harness.store.list_events(
        project_id=project.id, event_type=EventType.WEBHOOK_REJECTED
    )
    assert len(rejected) == 1


@pytest.mark.asyncio
async def test_build_failure_without_snapshot_stays_failed(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()
    harness.build_system.failing_tags.add("1")

    stored = await harness.deploy(project)

    assert stored.status is ProjectStatus.FAILED
    assert stored.last_error is ErrorKind.BUILD_FAILED
    assert harness.runtime.instances == {}
    assert harness.alerter.alerts == []


@pytest.mark.asyncio
async def test_source_sync_failure_fails_before_build(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()
    harness.source.fail_sync = True

    stored = await harness.deploy(project)

    assert stored.status is ProjectStatus.FAILED
    assert stored.last_error is ErrorKind.BUILD_FAILED
    assert harness.build_system.requests == []


@pytest.mark.asyncio
async def test_cancel_ends_hung_source_sync(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()
    harness.source.hang_sync = asyncio.Event()

    outcome = await harness.orchestrator.trigger_deploy(project.id)
    assert outcome.accepted is True
    await asyncio.sleep(0)
    assert harness.orchestrator.cancel(project.id) is True
    await asyncio.wait_for(harness.orchestrator.wait_for(project.id), timeout=2)

    stored = await harness.reload(project)
    assert stored.status is ProjectStatus.FAILED
    assert stored.last_error is ErrorKind.CANCELLED
    assert harness.orchestrator.in_flight(project.id) is None
    assert harness.build_system.requests == []


@pytest.mark.asyncio
async def test_source_sync_timeout_fails_attempt(tmp_path: Path) -> None:
    harness = build_harness(tmp_path, source_timeout_seconds=0.05)
    project = await harness.add_project()
    harness.source.hang_sync = asyncio.Event()

    stored = await asyncio.wait_for(harness.deploy(project), timeout=2)

    assert stored.status is ProjectStatus.FAILED
    assert stored.last_error is ErrorKind.BUILD_FAILED
    assert harness.orchestrator.in_flight(project.id) is None
    assert harness.build_system.requests == []


@pytest.mark.asyncio
async def test_unrestorable_previous_instance_alerts_and_skips_rollback(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()
    await harness.deploy(project)
    previous = harness.runtime.named(project.container_name)
    assert previous is not None
    harness.probe.overrides[harness.artifact(project, 2)] = None
    harness.runtime.fail_ensure_running.add(previous.id)

    stored = await harness.deploy(project)

    assert stored.status is ProjectStatus.FAILED
    assert stored.last_error is ErrorKind.RESTORE_FAILED
    assert len(harness.alerter.alerts) == 1
    started = await harness.store.list_events(
        project_id=project.id, event_type=EventType.ROLLBACK_STARTED
    )
    assert started == []


@pytest.mark.asyncio
async def test_cancelled_attempt_fails_without_rollback(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()
    await harness.deploy(project)
    harness.build_system.gate = asyncio.Event()

    outcome = await harness.orchestrator.trigger_deploy(project.id)
    assert outcome.accepted is True
    assert harness.orchestrator.cancel(project.id) is True
    await harness.orchestrator.wait_for(project.id)

    stored = await harness.reload(project)
    assert stored.status is ProjectStatus.FAILED
    assert stored.last_error is ErrorKind.CANCELLED
    assert harness.runtime.named(project.container_name) is not None
    assert harness.orchestrator.in_flight(project.id) is None
    assert harness.orchestrator.cancel(project.id) is False


@pytest.mark.asyncio
async def test_reported_build_failure_rolls_deployed_project_back(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()
    await harness.deploy(project)

    outcome = await harness.orchestrator.handle_build_report(build_report(project.id, "FAILURE"))
    assert outcome.accepted is True
    await harness.orchestrator.wait_for(project.id)

    stored = await harness.reload(project)
    assert stored.status is ProjectStatus.DEPLOYED
    assert stored.rolled_back is True
    reported = await harness.store.list_events(
        project_id=project.id, event_type=EventType.BUILD_REPORTED
    )
    assert reported[0].payload["status"] == "failure"


@pytest.mark.asyncio
async def test_reported_build_failure_on_failed_project_without_snapshot(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()
    harness.build_system.failing_tags.add("1")
    await harness.deploy(project)

    outcome = await harness.orchestrator.handle_build_report(build_report(project.id, "failure"))

    assert outcome.accepted is False
    assert outcome.reason == NO_SNAPSHOT


@pytest.mark.asyncio
async def test_reported_build_success_is_recorded_only(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()

    outcome = await harness.orchestrator.handle_build_report(build_report(project.id, "success"))

    assert outcome.accepted is False
    assert outcome.reason == BUILD_SUCCEEDED
    assert (await harness.reload(project)).status is ProjectStatus.IDLE


@pytest.mark.asyncio
async def test_reported_failure_during_attempt_is_ignored(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()
    harness.build_system.gate = asyncio.Event()
    await harness.orchestrator.trigger_deploy(project.id)

    outcome = await harness.orchestrator.handle_build_report(build_report(project.id, "failure"))

    assert outcome.reason == BUILD_IN_PROGRESS
    harness.build_system.gate.set()
    await harness.orchestrator.wait_for(project.id)
    assert (await harness.reload(project)).status is ProjectStatus.DEPLOYED


@pytest.mark.asyncio
async def test_build_report_with_bad_signature_raises(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()

    with pytest.raises(VerificationFailed):
        await harness.orchestrator.handle_build_report(
            build_report(project.id, "failure", secret="nope")
        )


@pytest.mark.asyncio
async def test_operator_rollback_targets_previous_version(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()
    await harness.deploy(project)
    await harness.deploy(project)

    outcome = await harness.orchestrator.trigger_rollback(project.id)
    assert outcome.accepted is True
    await harness.orchestrator.wait_for(project.id)

    stored = await harness.reload(project)
    assert stored.status is ProjectStatus.DEPLOYED
    assert stored.rolled_back is True
    live = harness.runtime.named(project.container_name)
    assert live is not None
    assert live.image == harness.artifact(project, 1)


@pytest.mark.asyncio
async def test_operator_rollback_to_named_version(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()
    await harness.deploy(project)
    await harness.deploy(project)
    await harness.deploy(project)
    target = (await harness.retention.list(project.id))[0]

    await harness.orchestrator.trigger_rollback(project.id, target.version)
    await harness.orchestrator.wait_for(project.id)

    live = harness.runtime.named(project.container_name)
    assert live is not None
    assert live.image == target.artifact


@pytest.mark.asyncio
async def test_operator_rollback_without_snapshot_changes_nothing(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()

    with pytest.raises(NoSnapshotAvailable):
        await harness.orchestrator.trigger_rollback(project.id)
    with pytest.raises(NoSnapshotAvailable):
        await harness.orchestrator.trigger_rollback(project.id, "20200101T000000000000Z")

    stored = await harness.reload(project)
    assert stored.status is ProjectStatus.IDLE
    assert stored.attempt_seq == 0


@pytest.mark.asyncio
async def test_manual_triggers_for_unknown_project_raise(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)

    with pytest.raises(ProjectNotFound):
        await harness.orchestrator.trigger_deploy("missing")
    with pytest.raises(ProjectNotFound):
        await harness.orchestrator.trigger_rollback("missing")


@pytest.mark.asyncio
async def test_deployed_state_precedes_snapshot(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()

    await harness.deploy(project)

    changes = await harness.store.list_events(
        project_id=project.id, event_type=EventType.STATE_CHANGED
    )
    deployed_at = next(e.timestamp for e in changes if e.payload["to"] == "deployed")
    snapshot = (await harness.retention.list(project.id))[0]
    assert deployed_at <= snapshot.created_at


@pytest.mark.asyncio
async def test_recover_marks_interrupted_attempts_failed(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project(status=ProjectStatus.HEALTH_CHECKING, attempt_seq=4)
    idle = await harness.add_project()

    recovered = await harness.orchestrator.recover()

    assert recovered == [project.id]
    stored = await harness.reload(project)
    assert stored.status is ProjectStatus.FAILED
    assert stored.last_error is ErrorKind.CANCELLED
    assert (await harness.reload(idle)).status is ProjectStatus.IDLE


@pytest.mark.asyncio
async def test_shutdown_cancels_in_flight_attempts(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    project = await harness.add_project()
    harness.build_system.gate = asyncio.Event()
    await harness.orchestrator.trigger_deploy(project.id)

    await harness.orchestrator.shutdown()

    stored = await harness.reload(project)
    assert stored.status is ProjectStatus.FAILED
    assert stored.last_error is ErrorKind.CANCELLED
