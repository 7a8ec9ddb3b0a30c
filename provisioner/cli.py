#!/usr/bin/env python3
"""
labstack - plan, apply and destroy declaration files.

Exit codes:
    0  success
    1  apply/destroy finished with at least one failed or cancelled step
    2  the declaration set is invalid (nothing was executed)
"""

from __future__ import annotations
import argparse
import json
import sys
import threading
from typing import Callable, List, Optional, Sequence

from dotenv import load_dotenv

from provisioner.services.engine import OrchestratorEngine, Outcome
from provisioner.services.errors import OrchestratorError, ValidationError
from provisioner.services.loader import load_stack
from provisioner.services.utils import configure_logging

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="labstack",
        description="Dependency-ordered provisioning of declared infrastructure.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_common(p: argparse.ArgumentParser, file_required: bool) -> None:
        p.add_argument("-f", "--file", required=file_required, help="Declaration file (YAML or JSON)")
        p.add_argument("--project", help="Override the project name")
        p.add_argument("--env", help="Override the environment name")
        p.add_argument("--state-dir", help="Directory holding state snapshots")
        p.add_argument("--target", action="append", default=[], metavar="ID",
                       help="Restrict to this declaration's subgraph (repeatable)")
        p.add_argument("--json", action="store_true", help="Print the machine-readable result")

    def add_execution(p: argparse.ArgumentParser) -> None:
        p.add_argument("--concurrency", type=int, default=None, metavar="N", help="Worker pool size")
        p.add_argument("--dry-run", action="store_true", help="Plan only; make no external calls")

    p_plan = sub.add_parser("plan", help="Print the computed diff and execution order")
    add_common(p_plan, file_required=True)

    p_apply = sub.add_parser("apply", help="Execute the plan")
    add_common(p_apply, file_required=True)
    add_execution(p_apply)
    p_apply.add_argument("--rotate", action="append", default=[], metavar="SECRET_ID",
                         help="Regenerate this aws.secret declaration (repeatable)")

    p_destroy = sub.add_parser("destroy", help="Tear everything down in reverse dependency order")
    add_common(p_destroy, file_required=False)
    add_execution(p_destroy)
    return parser


def _print(outcome: Outcome, as_json: bool) -> None:
    if as_json:
        print(json.dumps(outcome.to_dict(), indent=2, default=str))
        return
    for warning in outcome.validation.get("warnings", []):
        print(f"warning: {warning}")
    print(outcome.report())


def _run_cancellable(engine: OrchestratorEngine, project: str, env: str,
                     fn: Callable[[], Outcome]) -> Outcome:
    """Run fn on a worker thread so Ctrl-C can cancel the plan cleanly."""
    box: dict = {}

    def target():
        try:
            box["outcome"] = fn()
        except BaseException as e:
            box["error"] = e

    worker = threading.Thread(target=target, name="labstack-apply")
    worker.start()
    while worker.is_alive():
        try:
            worker.join(0.2)
        except KeyboardInterrupt:
            print("Cancelling; waiting for in-flight steps to finish...", file=sys.stderr)
            engine.cancel(project, env)
    if "error" in box:
        raise box["error"]
    return box["outcome"]


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    if getattr(args, "concurrency", None) is not None and args.concurrency < 1:
        print("error: --concurrency must be at least 1", file=sys.stderr)
        return EXIT_INVALID

    try:
        engine = OrchestratorEngine.from_env(args.state_dir)

        if args.command == "destroy":
            if args.file:
                stack = load_stack(args.file, args.project, args.env)
                project, env = stack.project, stack.env
            elif args.project and args.env:
                project, env = args.project, args.env
            else:
                print("error: destroy needs --file or both --project and --env", file=sys.stderr)
                return EXIT_INVALID
            outcome = _run_cancellable(engine, project, env, lambda: engine.destroy(
                project, env, targets=args.target, concurrency=args.concurrency, dry_run=args.dry_run))
            _print(outcome, args.json)
            return EXIT_OK if outcome.success else EXIT_FAILED

        stack = load_stack(args.file, args.project, args.env)
        if args.command == "plan":
            outcome = engine.plan(stack, targets=args.target)
            _print(outcome, args.json)
            return EXIT_OK

        outcome = _run_cancellable(engine, stack.project, stack.env, lambda: engine.apply(
            stack, targets=args.target, concurrency=args.concurrency,
            dry_run=args.dry_run, rotate=args.rotate))
        _print(outcome, args.json)
        return EXIT_OK if outcome.success else EXIT_FAILED

    except ValidationError as e:
        errors: List[str] = e.errors or [str(e)]
        for err in errors:
            print(f"error: {err}", file=sys.stderr)
        return EXIT_INVALID
    except (OrchestratorError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
