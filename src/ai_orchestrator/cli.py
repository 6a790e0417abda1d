"""Command-line interface for the AI orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Sequence

from .config import OrchestratorSettings, configure_logging, get_settings
from .errors import AlreadyExists, ExternalCallFailure, InvalidIdentifier, OrchestratorError
from .lifecycle import SORT_KEYS, AggregateStats, SessionLifecycleManager
from .workflows import ESCALATION_TARGETS, Orchestrator
from .wrapper import RunnerFactory, format_json_output

SESSION_HELP = """\
Session management commands:
  session list [--active] [--sort name|date|tokens|cost]
  session show <name>
  session clean --older-than N [--dry-run] [--force]
  session stats [--session NAME]
  session export [--output PATH] [--active]
"""


def _orchestrator(args: argparse.Namespace) -> Orchestrator:
    return Orchestrator.from_settings(args.settings, runner_factory=args.runner_factory)


def _lifecycle(args: argparse.Namespace) -> SessionLifecycleManager:
    orchestrator = _orchestrator(args)
    return SessionLifecycleManager(
        orchestrator.store,
        active_days=args.settings.active_days,
        analytics=orchestrator.analytics,
    )


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2))


def cmd_init(args: argparse.Namespace) -> int:
    store = _orchestrator(args).store
    try:
        handle = store.init(args.feature_id, args.description)
    except (AlreadyExists, InvalidIdentifier) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"Initialized session '{handle.feature_id}' at {handle.path}")
    return 0


def cmd_session_list(args: argparse.Namespace) -> int:
    summaries = _lifecycle(args).list(active_only=args.active, sort=args.sort)
    if args.json:
        _print_json([summary.to_dict() for summary in summaries])
        return 0
    if not summaries:
        print("No sessions found")
        return 0
    for summary in summaries:
        marker = "*" if summary.active else " "
        print(
            f"{marker} {summary.name:<30} last used {summary.last_used}  "
            f"{summary.interactions} interactions  {summary.total_tokens} tokens  "
            f"${summary.total_cost:.4f}"
        )
    return 0


def cmd_session_show(args: argparse.Namespace) -> int:
    detail = _lifecycle(args).show(args.name)
    if args.json:
        _print_json(detail.to_dict())
        return 0
    summary = detail.summary
    current = detail.state.current_state
    print(f"Session: {summary.name}")
    print(f"  Created:      {summary.created_at}")
    print(f"  Last used:    {summary.last_used}")
    print(f"  Health:       {detail.health}")
    print(f"  Active task:  {current.active_task or '-'}")
    print(f"  Model:        {current.model_in_use}")
    print(f"  Session id:   {summary.session_id or '-'}")
    print("  Tasks:        " + ", ".join(f"{k}={v}" for k, v in detail.task_counts.items()))
    print(f"  History:      {detail.history_count} records")
    print(f"  Tokens:       {summary.input_tokens} in / {summary.output_tokens} out")
    print(f"  Cost:         ${summary.total_cost:.4f}")
    if detail.recent_interactions:
        print("  Recent interactions:")
        for interaction in detail.recent_interactions:
            print(f"    {interaction.timestamp} {interaction.model}: {interaction.prompt_preview}")
    return 0


def _confirm_clean(candidates: Sequence[str]) -> bool:
    if not sys.stdin.isatty():
        print("Refusing to delete without --force in a non-interactive shell", file=sys.stderr)
        return False
    answer = input(f"Delete {len(candidates)} session(s)? [y/N] ")
    return answer.strip().lower() in {"y", "yes"}


def cmd_session_clean(args: argparse.Namespace) -> int:
    result = _lifecycle(args).clean(
        args.older_than,
        dry_run=args.dry_run,
        force=args.force,
        confirm=_confirm_clean,
    )
    if not result.candidates:
        print(f"No sessions older than {args.older_than} days")
        return 0
    if result.dry_run:
        print(f"Would delete {len(result.candidates)} session(s):")
        for name in result.candidates:
            print(f"  {name}")
        return 0
    if result.cancelled:
        print("Cleanup cancelled")
        return 1
    print(f"Deleted {len(result.removed)} session(s):")
    for name in result.removed:
        print(f"  {name}")
    if result.skipped:
        print(
            f"Skipped {len(result.skipped)} busy session(s): {', '.join(result.skipped)}",
            file=sys.stderr,
        )
        return 1
    return 0


def cmd_session_stats(args: argparse.Namespace) -> int:
    stats = _lifecycle(args).stats(args.session)
    if args.json:
        _print_json(stats.to_dict())
        return 0
    if isinstance(stats, AggregateStats):
        print(f"Total sessions:   {stats.total_sessions}")
        print(f"Active sessions:  {stats.active_sessions}")
        print(f"Interactions:     {stats.interactions}")
        print(f"Tokens:           {stats.input_tokens} in / {stats.output_tokens} out")
        print(f"Total cost:       ${stats.total_cost:.4f}")
        if stats.most_active:
            print("Most active:")
            for summary in stats.most_active:
                print(f"  {summary.name}: {summary.interactions} interactions")
        return 0

    usage = stats.usage
    print(f"Session: {stats.name}")
    print(f"  Interactions: {usage.interactions}")
    print(f"  Tokens:       {usage.input_tokens} in / {usage.output_tokens} out")
    print(f"  Total cost:   ${usage.total_cost:.4f}")
    for model, bucket in sorted(usage.by_model.items()):
        print(
            f"  {model}: {bucket.interactions} calls, {bucket.total_tokens} tokens, "
            f"${bucket.cost:.4f}"
        )
    return 0


def cmd_session_export(args: argparse.Namespace) -> int:
    result = _lifecycle(args).export(args.output, active_only=args.active)
    print(f"Exported {result.count} session(s) to {result.path}")
    return 0


def cmd_session_help(args: argparse.Namespace) -> int:
    print(SESSION_HELP, end="")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    try:
        result = asyncio.run(
            orchestrator.wrapper.invoke(
                args.command,
                args.prompt,
                timeout=args.timeout,
                session_name=args.session_name,
                model=args.model,
                continue_session=args.continue_session,
                resume_id=args.resume,
            )
        )
    except ExternalCallFailure as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return exc.returncode if exc.returncode else 1
    print(format_json_output(result) if args.json else result.text)
    return 0


def cmd_plan(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    result = asyncio.run(
        orchestrator.plan(
            args.feature_id,
            " ".join(args.prompt),
            model=args.model,
            retry=args.retry,
            timeout=args.timeout,
        )
    )
    tasks = sum(len(phase.tasks) for phase in result.plan.phases)
    print(f"Plan for '{result.feature_id}' created by {result.model} (attempts: {result.attempts})")
    if result.parsed:
        print(f"  {len(result.plan.phases)} phase(s), {tasks} task(s)")
    else:
        print("  Model output saved to artifacts/plan-output.md; plan left unchanged")
    return 0


def cmd_implement(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    result = asyncio.run(
        orchestrator.implement(
            args.feature_id,
            args.task,
            model=args.model,
            rerun=args.rerun,
            agent=os.environ.get("AGENT_ID"),
        )
    )
    if result.skipped:
        print(f"Task '{result.task_id}' is already {result.status}; use --rerun to run it again")
        return 0
    print(f"Task '{result.task_id}' is now {result.status}")
    if result.invocation is not None:
        print(result.invocation.text)
    return 0 if result.validated is not False else 1


def cmd_verify(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    result = asyncio.run(orchestrator.verify(args.feature_id, test_type=args.test_type))
    print(f"Verification agent: {result.agent_id} ({result.test_type})")
    print(result.invocation.text)
    return 0


def cmd_review(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    result = asyncio.run(
        orchestrator.review(
            args.feature_id,
            args.files,
            focus=args.focus,
            architecture=args.architecture,
            model=args.model,
            timeout=args.timeout,
        )
    )
    print(
        f"{result.kind.capitalize()} review of {len(result.files)} file(s) by {result.model}; "
        f"saved to artifacts/{result.artifact}"
    )
    for key, value in result.summary.items():
        print(f"  {key}: {value}")
    print(result.invocation.text)
    return 0


def cmd_escalate(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    result = asyncio.run(
        orchestrator.escalate(
            args.feature,
            args.target,
            args.prompt,
            include_context=args.context,
            timeout=args.timeout,
        )
    )
    print(f"Escalated '{result.feature_id}' to {result.target}")
    print(result.invocation.text)
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    if args.feature_id is None:
        features = orchestrator.active_features()
        if args.json:
            _print_json(features)
        elif not features:
            print("No active features")
        else:
            for feature_id in features:
                print(feature_id)
        return 0

    report = orchestrator.status(args.feature_id)
    if args.json:
        _print_json(report.to_dict())
        return 0
    current = report.state.current_state
    print(f"Feature: {report.feature_id}")
    print(f"  Health:       {report.health}")
    print(f"  Active task:  {current.active_task or '-'}")
    print(f"  Model:        {current.model_in_use}")
    print(f"  Last updated: {current.last_updated}")
    print("  Tasks:        " + ", ".join(f"{k}={v}" for k, v in report.task_counts.items()))
    print(f"  History:      {report.history_count} records")
    for record in report.recent_history:
        print(f"    {record.timestamp} {record.command} [{record.status}] {record.model}")
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    store = _orchestrator(args).store
    records = store.history(args.feature_id).filter(
        command=args.command, model=args.model, limit=args.limit
    )
    if args.json:
        _print_json([record.model_dump(mode="json", exclude_none=True) for record in records])
        return 0
    for record in records:
        task = f" {record.task_id}" if record.task_id else ""
        print(
            f"{record.timestamp} {record.command}{task} [{record.status}] "
            f"{record.model} {record.duration_ms}ms"
        )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ai-orchestrator", description="AI-assisted plan/implement/verify orchestrator"
    )
    parser.add_argument("--log-level", help="Override AI_LOG_LEVEL")
    sub = parser.add_subparsers(dest="cmd")

    p_init = sub.add_parser("init", help="Initialize a feature session")
    p_init.add_argument("feature_id")
    p_init.add_argument("description", nargs="?")
    p_init.set_defaults(func=cmd_init)

    p_session = sub.add_parser("session", help="Manage stored sessions")
    session_sub = p_session.add_subparsers(dest="session_cmd")
    p_session.set_defaults(func=cmd_session_help)

    p_list = session_sub.add_parser("list", help="List sessions")
    p_list.add_argument("--active", action="store_true", help="Only sessions used recently")
    p_list.add_argument("--sort", choices=SORT_KEYS, default="date")
    p_list.add_argument("--json", action="store_true", help="Output JSON")
    p_list.set_defaults(func=cmd_session_list)

    p_show = session_sub.add_parser("show", help="Show one session")
    p_show.add_argument("name")
    p_show.add_argument("--json", action="store_true", help="Output JSON")
    p_show.set_defaults(func=cmd_session_show)

    p_clean = session_sub.add_parser("clean", help="Delete old sessions")
    p_clean.add_argument("--older-than", type=int, required=True, metavar="N")
    p_clean.add_argument("--dry-run", action="store_true")
    p_clean.add_argument("--force", action="store_true")
    p_clean.set_defaults(func=cmd_session_clean)

    p_stats = session_sub.add_parser("stats", help="Usage statistics")
    p_stats.add_argument("--session")
    p_stats.add_argument("--json", action="store_true", help="Output JSON")
    p_stats.set_defaults(func=cmd_session_stats)

    p_export = session_sub.add_parser("export", help="Export sessions as JSON")
    p_export.add_argument("--output")
    p_export.add_argument("--active", action="store_true")
    p_export.set_defaults(func=cmd_session_export)

    p_session_help = session_sub.add_parser("help", help="Show session commands")
    p_session_help.set_defaults(func=cmd_session_help)

    p_run = sub.add_parser("run", help="Invoke a model command with session tracking")
    p_run.add_argument("command", choices=("claude", "gemini"))
    p_run.add_argument("timeout", type=int)
    p_run.add_argument("--session-name")
    p_run.add_argument("--json", action="store_true")
    p_run.add_argument("-c", "--continue", dest="continue_session", action="store_true")
    p_run.add_argument("-r", "--resume")
    p_run.add_argument("--model")
    p_run.add_argument("-p", "--prompt", required=True)
    p_run.set_defaults(func=cmd_run)

    p_plan = sub.add_parser("plan", help="Generate an implementation plan")
    p_plan.add_argument("feature_id")
    p_plan.add_argument("prompt", nargs="+")
    p_plan.add_argument("--model")
    p_plan.add_argument("--retry", action="store_true")
    p_plan.add_argument("--timeout", type=int)
    p_plan.set_defaults(func=cmd_plan)

    p_implement = sub.add_parser("implement", help="Implement one plan task")
    p_implement.add_argument("feature_id")
    p_implement.add_argument("--task", required=True)
    p_implement.add_argument("--model")
    p_implement.add_argument("--rerun", action="store_true")
    p_implement.set_defaults(func=cmd_implement)

    p_verify = sub.add_parser("verify", help="Run an independent verification")
    p_verify.add_argument("feature_id")
    test_type = p_verify.add_mutually_exclusive_group()
    for name in ("unit", "integration", "acceptance", "all"):
        test_type.add_argument(
            f"--{name}", dest="test_type", action="store_const", const=name
        )
    p_verify.set_defaults(func=cmd_verify, test_type="all")

    p_review = sub.add_parser("review", help="Review code or architecture with the deep model")
    p_review.add_argument("feature_id")
    p_review.add_argument("files", nargs="*", metavar="FILE")
    p_review.add_argument("--focus")
    p_review.add_argument("--architecture", action="store_true")
    p_review.add_argument("--model")
    p_review.add_argument("--timeout", type=int)
    p_review.set_defaults(func=cmd_review)

    p_escalate = sub.add_parser("escalate", help="Hand a feature over to another model")
    p_escalate.add_argument("target", choices=tuple(ESCALATION_TARGETS))
    p_escalate.add_argument("--feature", help="Feature id (default: most recently active)")
    p_escalate.add_argument("--prompt")
    p_escalate.add_argument("--no-context", dest="context", action="store_false")
    p_escalate.add_argument("--timeout", type=int)
    p_escalate.set_defaults(func=cmd_escalate)

    p_status = sub.add_parser("status", help="Show feature status")
    p_status.add_argument("feature_id", nargs="?")
    p_status.add_argument("--json", action="store_true")
    p_status.set_defaults(func=cmd_status)

    p_history = sub.add_parser("history", help="Show a feature's history")
    p_history.add_argument("feature_id")
    p_history.add_argument("--limit", type=int)
    p_history.add_argument("--command")
    p_history.add_argument("--model")
    p_history.add_argument("--json", action="store_true")
    p_history.set_defaults(func=cmd_history)

    return parser


def main(
    argv: list[str] | None = None,
    *,
    settings: OrchestratorSettings | None = None,
    runner_factory: RunnerFactory | None = None,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    args.settings = settings or get_settings()
    args.runner_factory = runner_factory
    configure_logging(args.log_level or args.settings.log_level)

    try:
        return args.func(args)
    except (OrchestratorError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
