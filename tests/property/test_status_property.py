from hypothesis import given
from hypothesis import strategies as st

from dockyard.core.state_machine import DeploymentStateMachine
from dockyard.models.project import IN_FLIGHT_STATUSES, ProjectStatus

statuses = st.sampled_from(list(ProjectStatus))


@given(st.sampled_from([member.value for member in ProjectStatus]))
def test_project_status_values_are_lowercase(value: str) -> None:
    assert value == value.lower()


@given(statuses)
def test_no_attempt_starts_from_an_in_flight_state(status: ProjectStatus) -> None:
    transitions = DeploymentStateMachine.VALID_TRANSITIONS
    starts = {ProjectStatus.BUILDING, ProjectStatus.ROLLING_BACK}
    if status in IN_FLIGHT_STATUSES:
        assert not starts & transitions[status]


@given(statuses, statuses)
def test_deployed_is_only_reached_through_a_health_gate(
    before: ProjectStatus, after: ProjectStatus
) -> None:
    allowed = after in DeploymentStateMachine.VALID_TRANSITIONS[before]
    if allowed and after is ProjectStatus.DEPLOYED:
        assert before in {ProjectStatus.HEALTH_CHECKING, ProjectStatus.ROLLING_BACK}
