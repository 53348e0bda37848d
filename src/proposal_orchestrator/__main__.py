"""Entry point for `python -m proposal_orchestrator` and the `proposal-orchestrator` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from proposal_orchestrator.checkpoint import WorkflowCheckpointStore, build_checkpoint_store
from proposal_orchestrator.dependencies import DependencyGraph
from proposal_orchestrator.errors import OrchestrationError
from proposal_orchestrator.generation import GenerationTable, StaticEvaluator, template_generator
from proposal_orchestrator.interrupts import InterruptController
from proposal_orchestrator.llm import build_llm_collaborators
from proposal_orchestrator.locks import ThreadLockRegistry
from proposal_orchestrator.models import (
    DocumentStatus,
    FeedbackSubmission,
    FeedbackType,
    PhaseName,
    SourceDocument,
    reference_for_unit,
)
from proposal_orchestrator.sessions import SessionManager
from proposal_orchestrator.settings import RuntimeSettings
from proposal_orchestrator.threads import generate_proposal_id, generate_thread_id
from proposal_orchestrator.workflow import ProposalWorkflow

logger = logging.getLogger("proposal_orchestrator")


@dataclass
class Runtime:
    """Process-root resources, built once and closed on exit."""

    settings: RuntimeSettings
    store: WorkflowCheckpointStore
    engine: ProposalWorkflow
    controller: InterruptController
    sessions: SessionManager

    def close(self) -> None:
        self.store.close()


def build_runtime(settings: RuntimeSettings, repo_root: Path) -> Runtime:
    map_path = settings.dependency_map_path(repo_root)
    graph = DependencyGraph.from_json_file(map_path) if map_path is not None else DependencyGraph.default()
    if settings.use_llm:
        generators, evaluator = build_llm_collaborators(settings, repo_root=repo_root)
    else:
        generators = GenerationTable({}, default=template_generator)
        evaluator = StaticEvaluator(pass_threshold=settings.pass_threshold)

    store = build_checkpoint_store(settings, repo_root)
    locks = ThreadLockRegistry()
    sessions = SessionManager.from_settings(store, settings, locks=locks)
    try:
        sessions.load_sessions()
    except OrchestrationError:
        store.close()
        raise
    engine = ProposalWorkflow(
        store=store,
        dependency_graph=graph,
        generators=generators,
        evaluator=evaluator,
        settings=settings,
        locks=locks,
        sessions=sessions,
    )
    return Runtime(
        settings=settings,
        store=store,
        engine=engine,
        controller=InterruptController(engine),
        sessions=sessions,
    )


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _read_text(inline: str | None, path: Path | None, label: str) -> str | None:
    if inline is not None and path is not None:
        raise ValueError(f"{label} cannot be given both inline and as a file")
    if path is not None:
        if not path.is_file():
            raise FileNotFoundError(f"{label} file does not exist: {path}")
        return path.read_text(encoding="utf-8")
    return inline


def _emit(payload: BaseModel | dict[str, Any] | list[Any]) -> None:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _summary(thread_id: str, runtime: Runtime) -> dict[str, Any]:
    state = runtime.engine.load(thread_id)
    return {
        "thread_id": thread_id,
        "status": state.status.value,
        "interrupt": runtime.controller.get_interrupt_status(thread_id).model_dump(mode="json"),
        "units": {
            **{phase.value: state.phase(phase).status.value for phase in state.required_phases},
            **{section_id: state.sections[section_id].status.value for section_id in state.required_sections},
        },
        "errors": [error.model_dump(mode="json") for error in state.errors],
    }


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def _cmd_start(args: argparse.Namespace, runtime: Runtime) -> int:
    proposal_id = args.proposal_id or generate_proposal_id()
    thread_id = generate_thread_id(proposal_id, args.user_id)
    source_text = _read_text(None, args.source_file, "source document")
    source = (
        SourceDocument(id=args.source_file.name, status=DocumentStatus.LOADED, text=source_text)
        if source_text is not None
        else None
    )
    runtime.engine.start(
        thread_id,
        _split_csv(args.sections),
        required_phases=[PhaseName(phase) for phase in _split_csv(args.phases)],
        source_document=source,
    )
    payload = _summary(thread_id, runtime)
    if args.open_session:
        payload["session"] = runtime.sessions.create_session(proposal_id, args.user_id).model_dump(mode="json")
    _emit(payload)
    return 0


def _cmd_status(args: argparse.Namespace, runtime: Runtime) -> int:
    payload = _summary(args.thread_id, runtime)
    details = runtime.controller.get_interrupt_details(args.thread_id)
    payload["interrupt_details"] = details.model_dump(mode="json") if details is not None else None
    _emit(payload)
    return 0


def _cmd_feedback(args: argparse.Namespace, runtime: Runtime) -> int:
    edited = _read_text(args.edited_content, args.edited_file, "edited content")
    submission = FeedbackSubmission(
        thread_id=args.thread_id,
        type=FeedbackType(args.type),
        comments=args.comments,
        content_reference=reference_for_unit(args.unit),
        edited_content=edited,
    )
    runtime.controller.submit_feedback(submission)
    if args.resume:
        _emit(runtime.controller.resume(args.thread_id))
    else:
        _emit(_summary(args.thread_id, runtime))
    return 0


def _cmd_resume(args: argparse.Namespace, runtime: Runtime) -> int:
    _emit(runtime.controller.resume(args.thread_id))
    return 0


def _cmd_edit(args: argparse.Namespace, runtime: Runtime) -> int:
    content = _read_text(args.content, args.content_file, "section content")
    if content is None:
        raise ValueError("edit requires --content or --content-file")
    runtime.engine.edit_section(args.thread_id, args.section, content)
    _emit(_summary(args.thread_id, runtime))
    return 0


def _cmd_sessions(args: argparse.Namespace, runtime: Runtime) -> int:
    if args.user_id:
        sessions = runtime.sessions.get_user_sessions(args.user_id)
    elif args.proposal_id:
        sessions = runtime.sessions.get_proposal_sessions(args.proposal_id)
    else:
        sessions = runtime.sessions.list_sessions()
    _emit([session.model_dump(mode="json") for session in sessions])
    return 0


def _cmd_sweep(_args: argparse.Namespace, runtime: Runtime) -> int:
    report = runtime.sessions.check_sessions()
    _emit({"paused": report.paused, "closed": report.closed})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Drive human-reviewed proposal generation workflows")
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Directory relative checkpoint and dependency map paths resolve against (default: cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    start = commands.add_parser("start", help="Create a job and run it to its first pause point")
    start.add_argument("--user-id", required=True)
    start.add_argument("--proposal-id", default=None, help="Defaults to a new uuid4")
    start.add_argument("--sections", required=True, help="Comma-separated required section ids, in order")
    start.add_argument("--phases", default="", help="Comma-separated phases to run first: research,solution,connections")
    start.add_argument("--source-file", type=Path, default=None, help="Optional source document text file")
    start.add_argument("--open-session", action="store_true", help="Open a session for the user after starting")
    start.set_defaults(handler=_cmd_start)

    status = commands.add_parser("status", help="Show unit statuses and the current pause point")
    status.add_argument("--thread-id", required=True)
    status.set_defaults(handler=_cmd_status)

    feedback = commands.add_parser("feedback", help="Submit a review decision for a paused thread")
    feedback.add_argument("--thread-id", required=True)
    feedback.add_argument("--type", required=True, choices=[item.value for item in FeedbackType])
    feedback.add_argument("--unit", required=True, help="Phase name or section id the feedback applies to")
    feedback.add_argument("--comments", default=None)
    feedback.add_argument("--edited-content", default=None)
    feedback.add_argument("--edited-file", type=Path, default=None)
    feedback.add_argument("--resume", action="store_true", help="Resume the thread right after submitting")
    feedback.set_defaults(handler=_cmd_feedback)

    resume = commands.add_parser("resume", help="Apply pending feedback and continue the thread")
    resume.add_argument("--thread-id", required=True)
    resume.set_defaults(handler=_cmd_resume)

    edit = commands.add_parser("edit", help="Replace an accepted section and mark its dependents stale")
    edit.add_argument("--thread-id", required=True)
    edit.add_argument("--section", required=True)
    edit.add_argument("--content", default=None)
    edit.add_argument("--content-file", type=Path, default=None)
    edit.set_defaults(handler=_cmd_edit)

    sessions = commands.add_parser("sessions", help="List persisted running and paused sessions")
    sessions.add_argument("--user-id", default=None)
    sessions.add_argument("--proposal-id", default=None)
    sessions.set_defaults(handler=_cmd_sessions)

    sweep = commands.add_parser("sweep", help="Run one idle/lifetime sweep over persisted sessions")
    sweep.set_defaults(handler=_cmd_sweep)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        runtime = build_runtime(settings, args.repo_root.resolve())
    except (OrchestrationError, ValueError, RuntimeError) as exc:
        logger.error("Unable to initialize: %s", exc)
        return 1

    try:
        return args.handler(args, runtime)
    except (OrchestrationError, ValueError, OSError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    finally:
        runtime.close()


if __name__ == "__main__":
    raise SystemExit(main())
