"""
Apply Plan construction.

A plan is a graph of steps. Every create/update step waits for the steps of
the declaration's prerequisites; every delete step waits for the delete steps
of whatever depended on the resource in the snapshot. A replace becomes a
delete step followed by a create step for the same declaration.
"""

from __future__ import annotations
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from provisioner.models import Declaration, ObservedResource
from .drift import MISSING, AttributeChange, DriftDetector, DriftResult, DriftStatus
from .errors import ValidationError
from .graph import DependencyGraph, graph_from_edges
from .utils import REDACTED, redact_text

SENSITIVE_KEY = re.compile(r"(password|passwd|secret|token|private_key)", re.IGNORECASE)


class ActionType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"


class StepOp(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


_ACTION_FOR_STATUS = {
    DriftStatus.NEEDS_CREATE: ActionType.CREATE,
    DriftStatus.NEEDS_UPDATE: ActionType.UPDATE,
    DriftStatus.REPLACE: ActionType.REPLACE,
    DriftStatus.NEEDS_DESTROY: ActionType.DESTROY,
}


@dataclass
class PlannedAction:
    declaration_id: str
    action: ActionType
    type: str
    changes: List[AttributeChange] = field(default_factory=list)
    reason: Optional[str] = None


@dataclass
class Step:
    key: str
    declaration_id: str
    op: StepOp
    type: str
    prerequisites: List[str] = field(default_factory=list)
    declaration: Optional[Declaration] = None


@dataclass
class Plan:
    project: str
    env: str
    actions: List[PlannedAction]
    steps: Dict[str, Step]
    order: List[str]
    drift: Dict[str, DriftResult] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return bool(self.steps)

    def summary(self) -> Dict[str, int]:
        counts = {a.value: 0 for a in ActionType}
        for a in self.actions:
            counts[a.action.value] += 1
        counts["unchanged"] = sum(1 for d in self.drift.values() if d.status == DriftStatus.UNCHANGED)
        return counts

    def statuses(self) -> Dict[str, str]:
        return {k: v.status.value for k, v in self.drift.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project,
            "env": self.env,
            "summary": self.summary(),
            "drift": self.statuses(),
            "actions": [
                {
                    "id": a.declaration_id,
                    "action": a.action.value,
                    "type": a.type,
                    "reason": a.reason,
                    "changes": [_display_change(c) for c in a.changes],
                }
                for a in self.actions
            ],
            "execution_order": list(self.order),
        }


def step_key(op: StepOp, decl_id: str) -> str:
    return f"{op.value}:{decl_id}"


def display_value(key: str, value: Any) -> Any:
    if value is MISSING:
        return None
    if SENSITIVE_KEY.search(key) and isinstance(value, str) and not value.startswith(("${", "secret:")):
        return REDACTED
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, (dict, list, int, float, bool)) or value is None:
        return value
    return str(value)


def _display_change(c: AttributeChange) -> Dict[str, Any]:
    return {
        "key": c.key,
        "before": display_value(c.key, c.before),
        "after": display_value(c.key, c.after),
        "forces_replace": c.forces_replace,
    }


class Planner:
    def __init__(self, detector: Optional[DriftDetector] = None):
        self.detector = detector or DriftDetector()

    def plan_apply(
        self,
        project: str,
        env: str,
        declarations: Sequence[Declaration],
        graph: DependencyGraph,
        snapshot: Mapping[str, ObservedResource],
        targets: Iterable[str] = (),
        force_update: Iterable[str] = (),
    ) -> Plan:
        targets = list(targets)
        if targets:
            unknown = [t for t in targets if t not in graph.prerequisites]
            if unknown:
                raise ValidationError([f"Unknown target(s): {', '.join(unknown)}"])
            keep = graph.closure_prerequisites(targets)
            declarations = [d for d in declarations if d.id in keep]
            graph = graph.subgraph(keep)
            snapshot = {k: v for k, v in snapshot.items() if k in keep}

        drift = self.detector.detect(declarations, graph, snapshot, force_update)
        by_id = {d.id: d for d in declarations}

        steps: Dict[str, Step] = {}
        for decl_id, result in drift.items():
            if result.status in (DriftStatus.REPLACE, DriftStatus.NEEDS_DESTROY):
                key = step_key(StepOp.DELETE, decl_id)
                steps[key] = Step(key, decl_id, StepOp.DELETE, snapshot[decl_id].type)
            if result.status in (DriftStatus.NEEDS_CREATE, DriftStatus.REPLACE, DriftStatus.NEEDS_UPDATE):
                op = StepOp.UPDATE if result.status == DriftStatus.NEEDS_UPDATE else StepOp.CREATE
                key = step_key(op, decl_id)
                steps[key] = Step(key, decl_id, op, result.type, declaration=by_id[decl_id])

        forward = {s.declaration_id: s.key for s in steps.values() if s.op != StepOp.DELETE}
        deletes = {s.declaration_id: s.key for s in steps.values() if s.op == StepOp.DELETE}
        for s in steps.values():
            if s.op == StepOp.DELETE:
                old_dependents = [
                    k for k, entry in snapshot.items()
                    if s.declaration_id in entry.references and k != s.declaration_id
                ]
                s.prerequisites = [deletes[k] for k in old_dependents if k in deletes]
                # Dependents that drop the reference in place must be updated first.
                s.prerequisites += [
                    forward[k] for k in old_dependents
                    if k not in deletes and k in forward
                    and s.declaration_id not in graph.prerequisites.get(k, [])
                ]
            else:
                s.prerequisites = [forward[p] for p in graph.prerequisites[s.declaration_id] if p in forward]
                if s.declaration_id in deletes:
                    s.prerequisites.append(deletes[s.declaration_id])

        order = self._order(steps, graph.order, snapshot)
        actions = [
            PlannedAction(r.id, _ACTION_FOR_STATUS[r.status], r.type, r.changes, r.reason)
            for r in self._ordered_results(drift, order)
        ]
        return Plan(project, env, actions, steps, order, drift)

    def plan_destroy(
        self,
        project: str,
        env: str,
        snapshot: Mapping[str, ObservedResource],
        targets: Iterable[str] = (),
    ) -> Plan:
        ids = list(snapshot.keys())
        graph = graph_from_edges(ids, {k: v.references for k, v in snapshot.items()})
        targets = list(targets)
        if targets:
            unknown = [t for t in targets if t not in snapshot]
            if unknown:
                raise ValidationError([f"Unknown target(s): {', '.join(unknown)}"])
            keep = graph.closure_dependents(targets)
        else:
            keep = set(ids)

        steps: Dict[str, Step] = {}
        drift: Dict[str, DriftResult] = {}
        for decl_id in graph.order:
            if decl_id not in keep:
                continue
            entry = snapshot[decl_id]
            key = step_key(StepOp.DELETE, decl_id)
            steps[key] = Step(
                key, decl_id, StepOp.DELETE, entry.type,
                prerequisites=[step_key(StepOp.DELETE, d) for d in graph.dependents[decl_id] if d in keep],
            )
            drift[decl_id] = DriftResult(
                decl_id, entry.type, DriftStatus.NEEDS_DESTROY,
                [AttributeChange(k, v, MISSING) for k, v in entry.attributes.items()],
                reason="destroy requested",
            )
        order = self._order(steps, graph.order, snapshot)
        actions = [
            PlannedAction(r.id, ActionType.DESTROY, r.type, r.changes, r.reason)
            for r in self._ordered_results(drift, order)
        ]
        return Plan(project, env, actions, steps, order, drift)

    @staticmethod
    def _order(steps: Mapping[str, Step], decl_order: Sequence[str],
               snapshot: Mapping[str, ObservedResource]) -> List[str]:
        # Deletes first in reverse declaration order, then forward steps.
        rank = {d: i for i, d in enumerate(decl_order)}
        tail = len(rank)
        for k in snapshot:
            if k not in rank:
                rank[k] = tail
                tail += 1
        deletes = sorted((s for s in steps.values() if s.op == StepOp.DELETE),
                         key=lambda s: -rank.get(s.declaration_id, 0))
        forward = sorted((s for s in steps.values() if s.op != StepOp.DELETE),
                         key=lambda s: rank.get(s.declaration_id, 0))
        natural = [s.key for s in deletes + forward]
        return graph_from_edges(natural, {k: steps[k].prerequisites for k in natural}).order

    @staticmethod
    def _ordered_results(drift: Mapping[str, DriftResult], order: Sequence[str]) -> List[DriftResult]:
        seen: Set[str] = set()
        results: List[DriftResult] = []
        for key in order:
            decl_id = key.split(":", 1)[1]
            if decl_id in seen:
                continue
            seen.add(decl_id)
            results.append(drift[decl_id])
        return results
