"""
Drift Detector

Compares each declaration's desired attributes with the refreshed snapshot and
classifies it. Interpolations are resolved against outputs the snapshot can
already vouch for; anything else is "known after apply".
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from provisioner.models import Declaration, ObservedResource
from .graph import DependencyGraph, declaration_references
from .interpolation import UNKNOWN, contains_unknown, find_references, resolve
from .service_registry import DEFAULT_REGISTRY, ServiceRegistry


class DriftStatus(str, Enum):
    UNCHANGED = "Unchanged"
    NEEDS_UPDATE = "NeedsUpdate"
    NEEDS_CREATE = "NeedsCreate"
    NEEDS_DESTROY = "NeedsDestroy"
    REPLACE = "Replace"


class _Missing:
    def __repr__(self) -> str:
        return "(absent)"


MISSING = _Missing()


@dataclass
class AttributeChange:
    key: str
    before: Any
    after: Any
    forces_replace: bool = False


@dataclass
class DriftResult:
    id: str
    type: str
    status: DriftStatus
    changes: List[AttributeChange] = field(default_factory=list)
    reason: Optional[str] = None
    desired: Dict[str, Any] = field(default_factory=dict)


class DriftDetector:
    def __init__(self, registry: ServiceRegistry = DEFAULT_REGISTRY):
        self.registry = registry

    def detect(
        self,
        declarations: Sequence[Declaration],
        graph: DependencyGraph,
        snapshot: Mapping[str, ObservedResource],
        force_update: Iterable[str] = (),
    ) -> Dict[str, DriftResult]:
        by_id = {d.id: d for d in declarations}
        forced = set(force_update)
        results: Dict[str, DriftResult] = {}
        # Outputs the planner can rely on before anything runs.
        known_outputs: Dict[str, Dict[str, Any]] = {}

        for decl_id in graph.order:
            decl = by_id[decl_id]
            entry = snapshot.get(decl_id)
            desired = resolve(decl.attributes, known_outputs, strict=False)

            if entry is None:
                results[decl_id] = DriftResult(
                    decl_id, decl.type, DriftStatus.NEEDS_CREATE,
                    [AttributeChange(k, MISSING, v) for k, v in desired.items()],
                    desired=desired,
                )
                continue

            result = self._compare(decl, entry, desired)
            if result.status != DriftStatus.REPLACE:
                cascade = self._replaced_interpolation(decl, results)
                if cascade:
                    result.status = DriftStatus.REPLACE
                    result.reason = f"interpolates outputs of replaced '{cascade}'"
            if decl_id in forced and result.status == DriftStatus.UNCHANGED:
                result.status = DriftStatus.NEEDS_UPDATE
                result.reason = "rotation requested"
            results[decl_id] = result

            if decl_id in forced:
                continue
            if result.status == DriftStatus.UNCHANGED:
                known_outputs[decl_id] = dict(entry.outputs)
            elif result.status == DriftStatus.NEEDS_UPDATE:
                changed = {c.key for c in result.changes}
                known_outputs[decl_id] = {k: v for k, v in entry.outputs.items() if k not in changed}

        for decl_id, entry in snapshot.items():
            if decl_id not in by_id:
                results[decl_id] = DriftResult(
                    decl_id, entry.type, DriftStatus.NEEDS_DESTROY,
                    [AttributeChange(k, v, MISSING) for k, v in entry.attributes.items()],
                    reason="no longer declared",
                )
        return results

    def _compare(self, decl: Declaration, entry: ObservedResource, desired: Dict[str, Any]) -> DriftResult:
        if entry.type != decl.type:
            return DriftResult(
                decl.id, decl.type, DriftStatus.REPLACE,
                [AttributeChange("type", entry.type, decl.type, forces_replace=True)],
                reason="type changed", desired=desired,
            )

        immutable = set(self.registry.immutable_attributes(decl.type)) | set(decl.immutable)
        changes: List[AttributeChange] = []
        for key in list(entry.attributes) + [k for k in desired if k not in entry.attributes]:
            before = entry.attributes.get(key, MISSING)
            after = desired.get(key, MISSING)
            if contains_unknown(after) or before != after:
                changes.append(AttributeChange(key, before, UNKNOWN if contains_unknown(after) else after,
                                               forces_replace=key in immutable))

        if any(c.forces_replace for c in changes):
            forced = ", ".join(c.key for c in changes if c.forces_replace)
            return DriftResult(decl.id, decl.type, DriftStatus.REPLACE, changes,
                               reason=f"immutable attribute(s) changed: {forced}", desired=desired)
        if changes:
            return DriftResult(decl.id, decl.type, DriftStatus.NEEDS_UPDATE, changes, desired=desired)

        # The snapshot must stop pointing at prerequisites that were dropped,
        # or their deletes are refused.
        wanted, recorded = set(declaration_references(decl)), set(entry.references)
        if wanted != recorded:
            moved = [f"-{r}" for r in sorted(recorded - wanted)] + [f"+{r}" for r in sorted(wanted - recorded)]
            return DriftResult(decl.id, decl.type, DriftStatus.NEEDS_UPDATE,
                               reason=f"references changed: {', '.join(moved)}", desired=desired)
        return DriftResult(decl.id, decl.type, DriftStatus.UNCHANGED, desired=desired)

    @staticmethod
    def _replaced_interpolation(decl: Declaration, results: Mapping[str, DriftResult]) -> Optional[str]:
        for ref in sorted(find_references(decl.attributes)):
            r = results.get(ref)
            if r is not None and r.status == DriftStatus.REPLACE:
                return ref
        return None
