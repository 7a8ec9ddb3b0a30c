"""
Human-readable plan and failure reports.

A failed apply is reported as a causal chain: every failed step, followed by
the steps that were skipped because of it, indented by distance from the
failure.
"""

from __future__ import annotations
import json
from typing import List

from .drift import MISSING
from .executor import ExecutionResult, NodeState
from .planner import ActionType, Plan, display_value

_SYMBOL = {
    ActionType.CREATE: "+",
    ActionType.UPDATE: "~",
    ActionType.REPLACE: "-/+",
    ActionType.DESTROY: "-",
}


def _fmt(key: str, value) -> str:
    if value is MISSING:
        return "(absent)"
    shown = display_value(key, value)
    if isinstance(shown, str):
        return shown if shown.startswith("(") else json.dumps(shown)
    return json.dumps(shown, sort_keys=True, default=str)


def format_plan(plan: Plan) -> str:
    s = plan.summary()
    lines = [
        f"Plan for {plan.project}-{plan.env}: {s['create']} to create, {s['update']} to update, "
        f"{s['replace']} to replace, {s['destroy']} to destroy, {s['unchanged']} unchanged."
    ]
    if not plan.actions:
        lines.append("No changes. Infrastructure matches the declarations.")
        return "\n".join(lines)

    for a in plan.actions:
        reason = f"  [{a.reason}]" if a.reason else ""
        lines.append(f"  {_SYMBOL[a.action]} {a.declaration_id} ({a.type}){reason}")
        if a.action == ActionType.DESTROY:
            continue
        for c in a.changes:
            marker = "  # forces replacement" if c.forces_replace else ""
            lines.append(f"      {c.key}: {_fmt(c.key, c.before)} -> {_fmt(c.key, c.after)}{marker}")

    lines.append("Execution order:")
    for i, key in enumerate(plan.order, 1):
        lines.append(f"  {i:>3}. {key}")
    return "\n".join(lines)


def format_failure_report(result: ExecutionResult) -> str:
    failed = result.in_state(NodeState.FAILED)
    skipped = result.in_state(NodeState.SKIPPED)
    cancelled = result.in_state(NodeState.CANCELLED)
    lines: List[str] = [
        f"Apply failed: {len(failed)} failed, {len(skipped)} skipped, {len(cancelled)} cancelled."
    ]
    for key in failed:
        node = result.nodes[key]
        lines.append(f"FAILED    {key}: {node.cause}")
        chained = [k for k in skipped if result.nodes[k].blocked_by and result.nodes[k].blocked_by[-1] == key]
        chained.sort(key=lambda k: len(result.nodes[k].blocked_by))
        for k in chained:
            depth = len(result.nodes[k].blocked_by)
            lines.append(f"{'  ' * depth}SKIPPED   {k}: {result.nodes[k].cause}")
    for key in cancelled:
        cause = result.nodes[key].cause or "not started before cancellation"
        lines.append(f"CANCELLED {key}: {cause}")
    return "\n".join(lines)


def format_result(result: ExecutionResult) -> str:
    if result.success:
        done = result.in_state(NodeState.SUCCEEDED)
        return f"Apply complete: {len(done)} step(s) succeeded."
    return format_failure_report(result)
