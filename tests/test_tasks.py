from __future__ import annotations

import pytest

from ai_orchestrator.errors import DependencyOrderError, InvalidTransition, NotFound
from ai_orchestrator.storage import ImplementationPlan, PlanPhase, PlanTask, SessionStore
from ai_orchestrator.tasks import (
    COMPLETED,
    IN_PROGRESS,
    PENDING,
    TaskStateMachine,
    incomplete_dependencies,
)


def _seed_plan(store: SessionStore) -> None:
    store.init("auth-feature")

    def mutate(plan: ImplementationPlan) -> None:
        plan.phases = [
            PlanPhase(
                phase_id="phase-1",
                name="API",
                tasks=[
                    PlanTask(task_id="schema", description="Define schema"),
                    PlanTask(
                        task_id="login-api",
                        description="Login endpoint",
                        dependencies=["schema"],
                    ),
                ],
            )
        ]

    store.update_plan("auth-feature", mutate)


@pytest.fixture
def machine(store: SessionStore) -> TaskStateMachine:
    _seed_plan(store)
    return TaskStateMachine(store)


def test_start_blocked_by_incomplete_dependency(machine: TaskStateMachine, store: SessionStore) -> None:
    with pytest.raises(DependencyOrderError) as excinfo:
        machine.start("auth-feature", "login-api")

    assert excinfo.value.pending == ["schema"]
    assert machine.get("auth-feature", "login-api").status == PENDING
    assert store.read_state("auth-feature").current_state.active_task is None


def test_start_then_complete_updates_active_task(machine: TaskStateMachine, store: SessionStore) -> None:
    started = machine.start("auth-feature", "schema", agent="worker-1")

    assert started.changed
    assert started.previous == PENDING
    assert started.status == IN_PROGRESS
    assert started.task.agent == "worker-1"
    assert store.read_state("auth-feature").current_state.active_task == "schema"

    completed = machine.complete("auth-feature", "schema")

    assert completed.changed
    assert completed.status == COMPLETED
    assert store.read_state("auth-feature").current_state.active_task is None

    # Dependency satisfied now.
    assert machine.start("auth-feature", "login-api").status == IN_PROGRESS


def test_start_on_started_task_is_noop(machine: TaskStateMachine) -> None:
    machine.start("auth-feature", "schema")

    again = machine.start("auth-feature", "schema")

    assert not again.changed
    assert again.previous == IN_PROGRESS
    assert again.status == IN_PROGRESS


def test_complete_pending_task_is_invalid(machine: TaskStateMachine) -> None:
    with pytest.raises(InvalidTransition):
        machine.complete("auth-feature", "schema")

    assert machine.get("auth-feature", "schema").status == PENDING


def test_complete_twice_is_noop(machine: TaskStateMachine) -> None:
    machine.start("auth-feature", "schema")
    machine.complete("auth-feature", "schema")

    result = machine.complete("auth-feature", "schema")

    assert not result.changed
    assert result.status == COMPLETED


def test_backward_transition_is_rejected(machine: TaskStateMachine) -> None:
    machine.set_status("auth-feature", "schema", COMPLETED)

    with pytest.raises(InvalidTransition):
        machine.set_status("auth-feature", "schema", PENDING)

    with pytest.raises(ValueError):
        machine.set_status("auth-feature", "schema", "blocked")


def test_unknown_task_raises_not_found(machine: TaskStateMachine) -> None:
    with pytest.raises(NotFound):
        machine.start("auth-feature", "missing-task")


def test_fail_keeps_task_in_progress(machine: TaskStateMachine) -> None:
    machine.start("auth-feature", "schema")

    result = machine.fail("auth-feature", "schema")

    assert not result.changed
    assert machine.get("auth-feature", "schema").status == IN_PROGRESS

    with pytest.raises(InvalidTransition):
        machine.fail("auth-feature", "login-api")


def test_incomplete_dependencies_counts_unknown_ids() -> None:
    plan = ImplementationPlan.model_validate(
        {
            "feature": {"id": "auth-feature"},
            "phases": [
                {
                    "phase_id": "p1",
                    "tasks": [
                        {"task_id": "a", "status": "completed"},
                        {"task_id": "b", "dependencies": ["a", "ghost"]},
                    ],
                }
            ],
        }
    )

    assert incomplete_dependencies(plan, plan.find_task("b")) == ["ghost"]


def test_duplicate_task_ids_are_rejected() -> None:
    with pytest.raises(ValueError):
        ImplementationPlan.model_validate(
            {
                "feature": {"id": "auth-feature"},
                "phases": [
                    {"phase_id": "p1", "tasks": [{"task_id": "a"}]},
                    {"phase_id": "p2", "tasks": [{"task_id": "a"}]},
                ],
            }
        )
