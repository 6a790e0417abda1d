"""Forward-only task status transitions persisted in the implementation plan."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import DependencyOrderError, InvalidTransition, NotFound
from .storage.models import TASK_STATUSES, ImplementationPlan, PlanTask
from .storage.session_store import SessionHandle, SessionStore

PENDING, IN_PROGRESS, COMPLETED = TASK_STATUSES

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TransitionResult:
    task: PlanTask
    previous: str
    changed: bool

    @property
    def status(self) -> str:
        return self.task.status


def _rank(status: str) -> int:
    return TASK_STATUSES.index(status)


def _find(plan: ImplementationPlan, task_id: str) -> PlanTask:
    task = plan.find_task(task_id)
    if task is None:
        raise NotFound(task_id, kind="Task")
    return task


def incomplete_dependencies(plan: ImplementationPlan, task: PlanTask) -> list[str]:
    """Dependencies of ``task`` that are not completed; unknown ids count as incomplete."""

    pending = []
    for dependency in task.dependencies:
        other = plan.find_task(dependency)
        if other is None or other.status != COMPLETED:
            pending.append(dependency)
    return pending


class TaskStateMachine:
    """Moves plan tasks through pending, in_progress and completed.

    Every transition is a read-modify-write of the plan under the session
    lock, so two processes can never advance the same task concurrently.
    """

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    def get(self, session: SessionHandle | str, task_id: str) -> PlanTask:
        return _find(self._store.read_plan(session), task_id)

    def start(
        self, session: SessionHandle | str, task_id: str, *, agent: str | None = None
    ) -> TransitionResult:
        """pending -> in_progress, and record the task as the session's active task.

        A task that already left ``pending`` is returned unchanged; re-running
        it is the caller's decision.
        """

        with self._store.transaction(session) as txn:
            task = _find(txn.plan, task_id)
            previous = task.status
            if previous != PENDING:
                return TransitionResult(task=task.model_copy(), previous=previous, changed=False)

            blocked = incomplete_dependencies(txn.plan, task)
            if blocked:
                raise DependencyOrderError(task_id, blocked)

            task.status = IN_PROGRESS
            if agent:
                task.agent = agent
            txn.state.current_state.active_task = task_id
            result = TransitionResult(task=task.model_copy(), previous=previous, changed=True)

        logger.info("Task started", extra={"task_id": task_id, "agent": task.agent})
        return result

    def complete(self, session: SessionHandle | str, task_id: str) -> TransitionResult:
        """in_progress -> completed; clears the active task if it points here."""

        with self._store.transaction(session) as txn:
            task = _find(txn.plan, task_id)
            previous = task.status
            if previous == COMPLETED:
                return TransitionResult(task=task.model_copy(), previous=previous, changed=False)
            if previous != IN_PROGRESS:
                raise InvalidTransition(task_id, previous, COMPLETED)

            task.status = COMPLETED
            if txn.state.current_state.active_task == task_id:
                txn.state.current_state.active_task = None
            result = TransitionResult(task=task.model_copy(), previous=previous, changed=True)

        logger.info("Task completed", extra={"task_id": task_id})
        return result

    def fail(self, session: SessionHandle | str, task_id: str) -> TransitionResult:
        """Record a failed attempt; the task stays in_progress so it can be retried."""

        task = self.get(session, task_id)
        if task.status != IN_PROGRESS:
            raise InvalidTransition(task_id, task.status, IN_PROGRESS)
        logger.warning("Task attempt failed", extra={"task_id": task_id})
        return TransitionResult(task=task, previous=task.status, changed=False)

    def set_status(self, session: SessionHandle | str, task_id: str, status: str) -> TransitionResult:
        """Apply an arbitrary forward move; backward moves raise InvalidTransition."""

        if status not in TASK_STATUSES:
            raise ValueError(f"Unknown task status '{status}'")
        current = self.get(session, task_id).status
        if _rank(status) < _rank(current):
            raise InvalidTransition(task_id, current, status)
        if status == current:
            return TransitionResult(task=self.get(session, task_id), previous=current, changed=False)
        if status == IN_PROGRESS:
            return self.start(session, task_id)
        if current == PENDING:
            self.start(session, task_id)
        return self.complete(session, task_id)


__all__ = [
    "COMPLETED",
    "IN_PROGRESS",
    "PENDING",
    "TaskStateMachine",
    "TransitionResult",
    "incomplete_dependencies",
]
