"""Plan, implement, verify, review and escalate workflows built on the session store."""

from __future__ import annotations

import inspect
import json
import logging
import os
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator, Sequence, Union

from pydantic import ValidationError

from .analytics import AnalyticsEngine, UsageSummary
from .config import OrchestratorSettings
from .errors import DependencyOrderError, ExternalCallFailure, OrchestratorError
from .lifecycle import session_health
from .runner.runner import ModelRunner
from .storage.atomic import atomic_write_text
from .storage.models import (
    FeatureInfo,
    HistoryRecord,
    ImplementationPlan,
    PlanPhase,
    PlanTask,
    StateRecord,
    utc_now,
)
from .storage.session_store import SessionHandle, SessionStore
from .tasks import IN_PROGRESS, PENDING, TaskStateMachine
from .wrapper import CommandWrapper, InvocationResult, RunnerFactory

TEST_TYPES = ("unit", "integration", "acceptance", "all")
DEFAULT_PLAN_RETRIES = 3

Validator = Callable[[InvocationResult], Union[bool, Awaitable[bool]]]

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
_SENSITIVE_NAME = re.compile(r"auth|password|secret|token|credential", re.IGNORECASE)

ARCHITECTURE_DIRS = ("docs", "architecture", "design", "doc", "Documentation")
ARCHITECTURE_SUFFIXES = frozenset({".md", ".txt", ".yaml", ".yml", ".json"})
ARCHITECTURE_ROOT_FILES = ("README.md", "ARCHITECTURE.md", "DESIGN.md")
MAX_ARCHITECTURE_FILES = 10
MAX_ARCHITECTURE_LINES = 200

CODE_REVIEW_CHECKLIST = (
    "Code quality and best practices",
    "Potential bugs and edge cases",
    "Security vulnerabilities",
    "Performance considerations",
    "Maintainability and readability",
    "Test coverage suggestions",
    "Documentation completeness",
)
ARCHITECTURE_CHECKLISTS = {
    "security": (
        "Security architecture and threat model",
        "Authentication and authorization design",
        "Data protection and encryption",
        "Network security and isolation",
    ),
    "performance": (
        "Performance bottlenecks and optimization opportunities",
        "Caching strategies",
        "Database and query optimization",
        "Resource utilization",
    ),
    "scalability": (
        "Horizontal and vertical scaling",
        "Load balancing and distribution",
        "State management and clustering",
        "Database scaling patterns",
    ),
}
DEFAULT_ARCHITECTURE_CHECKLIST = (
    "Overall architecture quality and patterns",
    "Component design and interactions",
    "Scalability and performance considerations",
    "Security architecture",
    "Technology choices and trade-offs",
    "Areas for improvement",
)

# Escalation target -> (CLI, --model value).
ESCALATION_TARGETS: dict[str, tuple[str, str | None]] = {
    "claude": ("claude", None),
    "gemini": ("gemini", None),
    "opus": ("claude", "opus"),
}


def command_for_model(model: str) -> tuple[str, str | None]:
    """Map a model alias to the CLI that serves it and the ``--model`` value to pass."""

    if model.startswith("gemini"):
        return "gemini", None if model == "gemini" else model
    return "claude", model


def new_verify_agent_id() -> str:
    return f"verify-{int(time.time())}-{os.getpid()}-{secrets.token_hex(4)}"


def _json_objects(text: str) -> Iterator[dict[str, Any]]:
    """Yield every JSON object found in fenced blocks or the outermost braces of ``text``."""

    candidates = [match.group(1) for match in _FENCED_JSON.finditer(text)]
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        try:
            document = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(document, dict):
            yield document


def extract_plan_document(text: str) -> dict[str, Any] | None:
    """Find a JSON object with a ``phases`` list in model output."""

    for document in _json_objects(text):
        if isinstance(document.get("phases"), list):
            return document
    return None


def summarize_review(text: str, *, architecture: bool = False) -> dict[str, Any]:
    """Pull headline numbers out of a ``{"review": {...}}`` document, if the model sent one."""

    review = next(
        (document["review"] for document in _json_objects(text) if isinstance(document.get("review"), dict)),
        None,
    )
    if review is None:
        return {}
    if architecture:
        summary: dict[str, Any] = {}
        if review.get("architecture_type"):
            summary["architecture_type"] = str(review["architecture_type"])
        if isinstance(review.get("components_identified"), int):
            summary["components_identified"] = review["components_identified"]
        return summary
    findings = review.get("findings")
    findings = [item for item in findings if isinstance(item, dict)] if isinstance(findings, list) else []
    return {
        "findings_count": len(findings),
        "critical_findings": sum(
            1 for item in findings if str(item.get("severity", "")).lower() == "critical"
        ),
    }


def discover_architecture_files(root: Path) -> list[Path]:
    """Documentation files that describe a project's architecture, capped at ten."""

    found: list[Path] = []
    for name in ARCHITECTURE_DIRS:
        directory = root / name
        if directory.is_dir():
            found.extend(
                path
                for path in sorted(directory.rglob("*"))
                if path.is_file() and path.suffix.lower() in ARCHITECTURE_SUFFIXES
            )
    found.extend(root / name for name in ARCHITECTURE_ROOT_FILES if (root / name).is_file())

    unique: list[Path] = []
    for path in found:
        if path not in unique:
            unique.append(path)
    return unique[:MAX_ARCHITECTURE_FILES]


def build_phases(document: dict[str, Any]) -> list[PlanPhase]:
    """Convert a model-produced plan document into validated phases.

    Every task starts ``pending`` whatever the model claims.
    """

    phases: list[PlanPhase] = []
    for phase_index, raw_phase in enumerate(document.get("phases") or [], start=1):
        if not isinstance(raw_phase, dict):
            continue
        tasks = []
        for task_index, raw_task in enumerate(raw_phase.get("tasks") or [], start=1):
            if isinstance(raw_task, str):
                raw_task = {"description": raw_task}
            if not isinstance(raw_task, dict):
                continue
            tasks.append(
                PlanTask(
                    task_id=str(
                        raw_task.get("task_id") or raw_task.get("id") or f"task-{phase_index}-{task_index}"
                    ),
                    description=str(raw_task.get("description") or raw_task.get("name") or ""),
                    agent=str(raw_task.get("agent") or "unassigned"),
                    dependencies=raw_task.get("dependencies"),
                    test_requirements=raw_task.get("test_requirements"),
                )
            )
        phases.append(
            PlanPhase(
                phase_id=str(raw_phase.get("phase_id") or raw_phase.get("id") or f"phase-{phase_index}"),
                name=str(raw_phase.get("name") or ""),
                tasks=tasks,
            )
        )
    return phases


@dataclass(slots=True)
class PlanResult:
    feature_id: str
    model: str
    attempts: int
    parsed: bool
    plan: ImplementationPlan
    invocation: InvocationResult


@dataclass(slots=True)
class ImplementResult:
    feature_id: str
    task_id: str
    status: str
    invoked: bool
    validated: bool | None = None
    invocation: InvocationResult | None = None

    @property
    def skipped(self) -> bool:
        return not self.invoked


@dataclass(slots=True)
class VerifyResult:
    feature_id: str
    agent_id: str
    test_type: str
    model: str
    invocation: InvocationResult


@dataclass(slots=True)
class ReviewResult:
    feature_id: str
    kind: str
    model: str
    attempts: int
    files: list[str]
    artifact: str
    invocation: InvocationResult
    summary: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class EscalateResult:
    feature_id: str
    target: str
    prompt: str
    invocation: InvocationResult


@dataclass(slots=True)
class StatusReport:
    feature_id: str
    state: StateRecord
    health: str
    task_counts: dict[str, int]
    history_count: int
    recent_history: list[HistoryRecord] = field(default_factory=list)
    usage: UsageSummary | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_id": self.feature_id,
            "state": self.state.model_dump(mode="json"),
            "health": self.health,
            "task_counts": dict(self.task_counts),
            "history_count": self.history_count,
            "recent_history": [
                record.model_dump(mode="json", exclude_none=True) for record in self.recent_history
            ],
            "usage": self.usage.to_dict() if self.usage else None,
        }


class Orchestrator:
    """Entry point for the plan, implement, verify, review and escalate commands."""

    def __init__(
        self,
        store: SessionStore,
        wrapper: CommandWrapper,
        *,
        analytics: AnalyticsEngine | None = None,
        tasks: TaskStateMachine | None = None,
        plan_model: str = "gemini",
        plan_fallback_model: str = "opus",
        implement_model: str = "sonnet",
        verify_model: str = "sonnet",
        review_model: str = "opus",
        default_timeout: float = 180,
        plan_timeout: float = 300,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.wrapper = wrapper
        self.analytics = analytics or AnalyticsEngine(store)
        self.tasks = tasks or TaskStateMachine(store)
        self.plan_model = plan_model
        self.plan_fallback_model = plan_fallback_model
        self.implement_model = implement_model
        self.verify_model = verify_model
        self.review_model = review_model
        self.default_timeout = default_timeout
        self.plan_timeout = plan_timeout
        self._clock = clock or utc_now

    @classmethod
    def from_settings(
        cls,
        settings: OrchestratorSettings,
        *,
        runner_factory: RunnerFactory | None = None,
    ) -> "Orchestrator":
        store = SessionStore(
            settings.session_root,
            lock_timeout=settings.lock_timeout,
            default_model=settings.implement_model,
        )
        analytics = AnalyticsEngine(store, pricing_overrides=settings.pricing)
        if runner_factory is None:

            def runner_factory(command: str) -> ModelRunner:
                return ModelRunner(command, settings.executable_for(command), env=settings.runner_env)

        return cls(
            store,
            CommandWrapper(store, analytics, runner_factory),
            analytics=analytics,
            plan_model=settings.plan_model,
            plan_fallback_model=settings.plan_fallback_model,
            implement_model=settings.implement_model,
            verify_model=settings.verify_model,
            review_model=settings.review_model,
            default_timeout=settings.default_timeout,
            plan_timeout=settings.plan_timeout,
        )

    async def _invoke_model(self, model: str, prompt: str, **kwargs: Any) -> InvocationResult:
        command, model_flag = command_for_model(model)
        return await self.wrapper.invoke(command, prompt, model=model_flag, **kwargs)

    async def _invoke_with_fallback(
        self,
        schedule: Sequence[str],
        prompt: str,
        *,
        feature_id: str,
        history_command: str,
        timeout: float,
        history_metadata: dict[str, Any] | None = None,
    ) -> tuple[str, int, InvocationResult]:
        """Try each model of ``schedule`` in turn; the last failure propagates."""

        for attempt, candidate in enumerate(schedule, start=1):
            try:
                invocation = await self._invoke_model(
                    candidate,
                    prompt,
                    timeout=timeout,
                    session_name=feature_id,
                    history_command=history_command,
                    history_metadata={**(history_metadata or {}), "attempt": attempt},
                )
            except ExternalCallFailure:
                logger.warning(
                    "Model attempt failed",
                    extra={
                        "feature_id": feature_id,
                        "command": history_command,
                        "model": candidate,
                        "attempt": attempt,
                    },
                )
                if attempt == len(schedule):
                    raise
                continue
            return candidate, attempt, invocation
        raise ValueError("At least one model is required")

    def _save_artifact(self, handle: SessionHandle, name: str, text: str) -> None:
        atomic_write_text(handle.artifacts_path / name, text)

    def _audit(self, handle: SessionHandle, **record: Any) -> None:
        try:
            self.store.append_history(handle, record)
        except (OrchestratorError, OSError) as exc:
            logger.warning(
                "Could not append history record",
                extra={"feature_id": handle.feature_id, "error": str(exc)},
            )

    # -- plan -------------------------------------------------------------------

    async def plan(
        self,
        feature_id: str,
        prompt: str,
        *,
        model: str | None = None,
        retry: bool = False,
        max_retries: int = DEFAULT_PLAN_RETRIES,
        timeout: float | None = None,
    ) -> PlanResult:
        """Ask the planning model for phases; fall back to the deep model on failure."""

        handle = self.store.get(feature_id)
        current = self.store.read_plan(handle)
        full_prompt = (
            f"Create an implementation plan for feature '{feature_id}': "
            f"{current.feature.description}\n\n{prompt}\n\n"
            "Respond with JSON of the form "
            '{"phases": [{"phase_id", "name", "tasks": [{"task_id", "description", '
            '"dependencies", "test_requirements"}]}]}.'
        )

        primary = model or self.plan_model
        schedule = [primary] * (max(1, max_retries) if retry else 1)
        if primary != self.plan_fallback_model:
            schedule.append(self.plan_fallback_model)

        candidate, attempt, invocation = await self._invoke_with_fallback(
            schedule,
            full_prompt,
            feature_id=feature_id,
            history_command="plan",
            timeout=timeout or self.plan_timeout,
        )
        return self._apply_plan(handle, candidate, attempt, invocation)

    def _apply_plan(
        self, handle: SessionHandle, model: str, attempts: int, invocation: InvocationResult
    ) -> PlanResult:
        self._save_artifact(handle, "plan-output.md", invocation.text)
        phases = None
        document = extract_plan_document(invocation.text)
        if document is not None:
            try:
                phases = build_phases(document)
                ImplementationPlan(feature=FeatureInfo(id=handle.feature_id), phases=phases)
            except (ValidationError, TypeError) as exc:
                logger.warning(
                    "Discarding invalid plan from model output",
                    extra={"feature_id": handle.feature_id, "model": model, "error": str(exc)},
                )
                phases = None
        if phases is None:
            logger.warning(
                "Planning output had no usable phases; plan left unchanged",
                extra={"feature_id": handle.feature_id, "model": model},
            )

        def _replace(plan: ImplementationPlan) -> ImplementationPlan:
            if phases is not None:
                plan.phases = phases
            return plan.model_copy(deep=True)

        plan = self.store.update_plan(handle, _replace)
        self.store.update_state(handle, model_in_use=model)
        return PlanResult(
            feature_id=handle.feature_id,
            model=model,
            attempts=attempts,
            parsed=phases is not None,
            plan=plan,
            invocation=invocation,
        )

    # -- implement --------------------------------------------------------------

    async def implement(
        self,
        feature_id: str,
        task_id: str,
        *,
        model: str | None = None,
        validator: Validator | None = None,
        rerun: bool = False,
        agent: str | None = None,
        timeout: float | None = None,
    ) -> ImplementResult:
        """Run one plan task through the model and, if given, the validator.

        A task that is no longer pending is skipped unless ``rerun`` is set.
        """

        handle = self.store.get(feature_id)
        model = model or self.implement_model
        task = self.tasks.get(handle, task_id)

        if task.status != PENDING and not rerun:
            logger.info(
                "Task already advanced; skipping",
                extra={"task_id": task_id, "task_status": task.status},
            )
            return ImplementResult(feature_id, task_id, task.status, invoked=False)

        if task.status == PENDING:
            try:
                task = self.tasks.start(handle, task_id, agent=agent).task
            except DependencyOrderError as exc:
                self._audit(
                    handle,
                    command="implement",
                    model=model,
                    status="failure",
                    task_id=task_id,
                    task_status=PENDING,
                    agent=agent,
                    error=str(exc),
                )
                raise

        prompt = (
            f"Implement task '{task.task_id}' of feature '{feature_id}': {task.description}"
        )
        if task.test_requirements:
            prompt += "\nTest requirements:\n" + "\n".join(
                f"- {requirement}" for requirement in task.test_requirements
            )

        try:
            invocation = await self._invoke_model(
                model,
                prompt,
                timeout=timeout or self.default_timeout,
                session_name=feature_id,
                history_command="implement",
                task_id=task_id,
                task_status=task.status,
                agent=agent or task.agent,
            )
        except ExternalCallFailure:
            if task.status == IN_PROGRESS:
                self.tasks.fail(handle, task_id)
            raise

        validated: bool | None = None
        if validator is not None:
            outcome = validator(invocation)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            validated = bool(outcome)
            if not validated:
                self._audit(
                    handle,
                    command="implement",
                    model=invocation.model,
                    status="failure",
                    task_id=task_id,
                    task_status=task.status,
                    agent=agent or task.agent,
                    error="validation failed",
                )
                if task.status == IN_PROGRESS:
                    self.tasks.fail(handle, task_id)
                return ImplementResult(
                    feature_id, task_id, task.status, invoked=True, validated=False, invocation=invocation
                )

        status = task.status
        if status == IN_PROGRESS:
            status = self.tasks.complete(handle, task_id).status
        return ImplementResult(
            feature_id, task_id, status, invoked=True, validated=validated, invocation=invocation
        )

    # -- verify -----------------------------------------------------------------

    async def verify(
        self,
        feature_id: str,
        *,
        test_type: str = "all",
        model: str | None = None,
        timeout: float | None = None,
    ) -> VerifyResult:
        """Run an independent verification that shares no context with earlier calls."""

        if test_type not in TEST_TYPES:
            raise ValueError(f"Unknown test type '{test_type}'; expected one of {', '.join(TEST_TYPES)}")

        handle = self.store.get(feature_id)
        model = model or self.verify_model
        agent_id = new_verify_agent_id()
        prompt = (
            f"Independently verify feature '{feature_id}' by running {test_type} tests. "
            "Do not rely on any earlier conversation. Report every failing test."
        )
        invocation = await self._invoke_model(
            model,
            prompt,
            timeout=timeout or self.default_timeout,
            session_name=feature_id,
            fresh_context=True,
            history_command="verify",
            agent=agent_id,
            history_metadata={"test_type": test_type},
        )
        self._save_artifact(handle, f"{agent_id}.md", invocation.text)
        return VerifyResult(
            feature_id=feature_id,
            agent_id=agent_id,
            test_type=test_type,
            model=invocation.model,
            invocation=invocation,
        )

    # -- review -----------------------------------------------------------------

    async def review(
        self,
        feature_id: str,
        files: Sequence[str | Path] = (),
        *,
        focus: str | None = None,
        architecture: bool = False,
        model: str | None = None,
        timeout: float | None = None,
        project_root: Path | None = None,
    ) -> ReviewResult:
        """Review source files with the deep model, or the architecture docs with the planner.

        Code reviews need at least one file and run on ``review_model``. Architecture
        reviews read the given files, or discover documentation under ``project_root``,
        and route like planning: ``plan_model`` first, then ``plan_fallback_model``.
        The raw response is saved as a ``review-*.json`` artifact.
        """

        handle = self.store.get(feature_id)
        root = (project_root or Path.cwd()).expanduser()
        kind = "architecture" if architecture else "code"
        paths = [self._review_path(root, name) for name in files]
        if not architecture and not paths:
            raise ValueError("At least one file is required for a code review")
        if architecture and not paths:
            paths = discover_architecture_files(root)

        description = self.store.read_plan(handle).feature.description or "No description provided"
        contents = [(path, path.read_text(encoding="utf-8", errors="replace")) for path in paths]
        lines_reviewed = sum(len(text.splitlines()) for _, text in contents)

        if architecture:
            prompt = self._architecture_prompt(description, contents, focus)
            primary = model or self.plan_model
            schedule = [primary]
            if primary != self.plan_fallback_model:
                schedule.append(self.plan_fallback_model)
        else:
            prompt = self._code_review_prompt(description, contents, focus)
            schedule = [model or self.review_model]

        file_names = [str(path) for path in paths]
        candidate, attempt, invocation = await self._invoke_with_fallback(
            schedule,
            prompt,
            feature_id=feature_id,
            history_command="review",
            timeout=timeout or self.default_timeout,
            history_metadata={
                "kind": kind,
                "files": file_names,
                "file_count": len(file_names),
                "lines_reviewed": lines_reviewed,
                "focus": focus,
            },
        )

        stamp = self._clock().strftime("%Y%m%d-%H%M%S")
        artifact = f"review-{kind}-{stamp}-{secrets.token_hex(3)}.json"
        self._save_artifact(handle, artifact, invocation.text)
        self.store.update_state(handle, model_in_use=candidate)
        summary = summarize_review(invocation.text, architecture=architecture)
        logger.info(
            "Review complete",
            extra={"feature_id": feature_id, "kind": kind, "model": candidate, **summary},
        )
        return ReviewResult(
            feature_id=feature_id,
            kind=kind,
            model=candidate,
            attempts=attempt,
            files=file_names,
            artifact=artifact,
            invocation=invocation,
            summary=summary,
        )

    @staticmethod
    def _review_path(root: Path, name: str | Path) -> Path:
        path = Path(name).expanduser()
        if not path.is_absolute():
            path = root / path
        if not path.is_file():
            raise ValueError(f"File not found: {name}")
        return path

    @staticmethod
    def _code_review_prompt(
        description: str, contents: list[tuple[Path, str]], focus: str | None
    ) -> str:
        parts = [f"Code Review Request\n\nFeature Context: {description}\n\nFiles to review:"]
        parts.extend(f"=== File: {path} ===\n{text}" for path, text in contents)
        parts.append(
            "Please perform a comprehensive code review focusing on:\n"
            + "\n".join(f"{index}. {item}" for index, item in enumerate(CODE_REVIEW_CHECKLIST, start=1))
        )
        if focus:
            parts.append(f"Special focus area: {focus}")
        if any(_SENSITIVE_NAME.search(str(path)) for path, _ in contents):
            parts.append(
                "IMPORTANT: This code appears to handle authentication or sensitive data. "
                "Pay special attention to security best practices and potential vulnerabilities."
            )
        parts.append(
            'Respond with JSON of the form {"status": "success", "review": {"summary", '
            '"findings": [{"severity": "critical|major|minor|suggestion", "file", "line", '
            '"issue", "recommendation"}], "recommendations", "security_assessment", '
            '"performance_notes"}}.'
        )
        return "\n\n".join(parts)

    @staticmethod
    def _architecture_prompt(
        description: str, contents: list[tuple[Path, str]], focus: str | None
    ) -> str:
        parts = [f"Architecture Review Request\n\nFeature Context: {description}"]
        if contents:
            parts.append("Architecture files found:")
            parts.extend(
                f"=== File: {path} ===\n" + "\n".join(text.splitlines()[:MAX_ARCHITECTURE_LINES])
                for path, text in contents
            )
        else:
            parts.append(
                "No explicit architecture documentation found. "
                "Analyze the codebase structure and infer the architecture."
            )
        checklist = ARCHITECTURE_CHECKLISTS.get((focus or "").lower(), DEFAULT_ARCHITECTURE_CHECKLIST)
        parts.append(
            "Please perform a comprehensive architecture review focusing on:\n"
            + "\n".join(f"{index}. {item}" for index, item in enumerate(checklist, start=1))
        )
        if focus and focus.lower() not in ARCHITECTURE_CHECKLISTS:
            parts.append(f"Special focus area: {focus}")
        parts.append(
            'Respond with JSON of the form {"status": "success", "review": {"summary", '
            '"architecture_type": "monolithic|microservices|serverless|hybrid", '
            '"components_identified", "patterns_found", "technology_stack", "strengths", '
            '"recommendations"}}.'
        )
        return "\n\n".join(parts)

    # -- escalate ---------------------------------------------------------------

    async def escalate(
        self,
        feature_id: str | None,
        target: str,
        prompt: str | None = None,
        *,
        include_context: bool = True,
        timeout: float | None = None,
    ) -> EscalateResult:
        """Hand the session over to another model in a fresh conversation.

        Without ``feature_id`` the most recently active feature is used.
        """

        if target not in ESCALATION_TARGETS:
            raise ValueError(
                f"Unknown escalation target '{target}'; expected one of {', '.join(ESCALATION_TARGETS)}"
            )
        if feature_id is None:
            feature_id = self._latest_active_feature()
        handle = self.store.get(feature_id)

        parts = [f"I need to escalate this conversation to {target}."]
        if include_context:
            parts.append(self._escalation_context(handle))
        if prompt:
            parts.append(f"Additional Context: {prompt}")
        text = "\n\n".join(parts)

        command, model_flag = ESCALATION_TARGETS[target]
        invocation = await self.wrapper.invoke(
            command,
            text,
            model=model_flag,
            timeout=timeout or self.default_timeout,
            session_name=feature_id,
            fresh_context=True,
            history_command="escalate",
            history_metadata={"target": target, "include_context": include_context},
        )
        return EscalateResult(feature_id=feature_id, target=target, prompt=text, invocation=invocation)

    def _latest_active_feature(self) -> str:
        entries = [entry for entry in self.store.registry.entries() if entry.status == "active"]
        if not entries:
            raise OrchestratorError("No active feature found; specify one with --feature")
        return sorted(entries, key=lambda entry: entry.last_active)[-1].feature_id

    def _escalation_context(self, handle: SessionHandle) -> str:
        state = self.store.read_state(handle)
        lines = [f"Current Session: {handle.feature_id}"]
        if state.current_state.active_task:
            lines.append(f"Active Task: {state.current_state.active_task}")

        recent = self.store.read_history(handle)[-5:]
        if recent:
            lines.append("Recent Commands:")
            lines.extend(
                f"  - {record.command} {record.task_id or ''}".rstrip() + f" ({record.status})"
                for record in recent
            )

        counts = self.store.read_plan(handle).status_counts()
        if sum(counts.values()):
            lines.append(
                "Implementation plan: "
                + ", ".join(f"{count} {status}" for status, count in counts.items())
            )
        return "\n".join(lines)

    # -- status -----------------------------------------------------------------

    def status(self, feature_id: str, *, recent: int = 5) -> StatusReport:
        handle = self.store.get(feature_id)
        state = self.store.read_state(handle)
        history = self.store.read_history(handle)
        return StatusReport(
            feature_id=feature_id,
            state=state,
            health=session_health(state.current_state.last_updated, self._clock()),
            task_counts=self.store.read_plan(handle).status_counts(),
            history_count=len(history),
            recent_history=history[-recent:] if recent > 0 else [],
            usage=self.analytics.session_summary(handle),
        )

    def active_features(self) -> list[str]:
        return self.store.registry.feature_ids()


__all__ = [
    "ESCALATION_TARGETS",
    "EscalateResult",
    "ImplementResult",
    "Orchestrator",
    "PlanResult",
    "ReviewResult",
    "StatusReport",
    "TEST_TYPES",
    "VerifyResult",
    "build_phases",
    "command_for_model",
    "discover_architecture_files",
    "extract_plan_document",
    "new_verify_agent_id",
    "summarize_review",
]
