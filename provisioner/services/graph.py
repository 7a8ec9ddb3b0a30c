"""
Dependency Graph Builder

Turns a set of declarations into a validated DAG. Edges come from the explicit
`references` list and from interpolation expressions inside attributes. The
build is pure: it never touches the snapshot or any external API.
"""

from __future__ import annotations
import heapq
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from provisioner.models import Declaration
from .errors import CycleDetected, UnresolvedReference, ValidationError
from .interpolation import find_references


@dataclass
class DependencyGraph:
    nodes: List[str]
    prerequisites: Dict[str, List[str]]
    dependents: Dict[str, List[str]] = field(default_factory=dict)
    order: List[str] = field(default_factory=list)

    def reverse_order(self) -> List[str]:
        return list(reversed(self.order))

    def closure_prerequisites(self, ids: Iterable[str]) -> Set[str]:
        return self._closure(ids, self.prerequisites)

    def closure_dependents(self, ids: Iterable[str]) -> Set[str]:
        return self._closure(ids, self.dependents)

    def _closure(self, ids: Iterable[str], edges: Mapping[str, List[str]]) -> Set[str]:
        seen: Set[str] = set()
        stack = list(ids)
        while stack:
            n = stack.pop()
            if n in seen:
                continue
            seen.add(n)
            stack.extend(edges.get(n, []))
        return seen

    def subgraph(self, keep: Iterable[str]) -> "DependencyGraph":
        keep = set(keep)
        nodes = [n for n in self.nodes if n in keep]
        return graph_from_edges(nodes, {n: [p for p in self.prerequisites[n] if p in keep] for n in nodes})


def declaration_references(decl: Declaration) -> List[str]:
    """Explicit references first, then implicit ones in first-seen order."""
    refs: List[str] = []
    for r in list(decl.references) + sorted(find_references(decl.attributes)):
        if r not in refs:
            refs.append(r)
    return refs


def build_graph(declarations: Sequence[Declaration]) -> DependencyGraph:
    ids = [d.id for d in declarations]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ValidationError([f"Duplicate declaration ids: {', '.join(duplicates)}"])

    known = set(ids)
    prerequisites: Dict[str, List[str]] = {}
    for decl in declarations:
        refs = declaration_references(decl)
        for r in refs:
            if r not in known:
                raise UnresolvedReference(decl.id, r)
        prerequisites[decl.id] = refs
    return graph_from_edges(ids, prerequisites)


def graph_from_edges(nodes: Sequence[str], prerequisites: Mapping[str, Iterable[str]]) -> DependencyGraph:
    """
    Build a graph from an explicit prerequisite mapping. Edges pointing outside
    `nodes` are dropped; callers that care about dangling edges check first.
    """
    nodes = list(nodes)
    position = {n: i for i, n in enumerate(nodes)}
    prereqs: Dict[str, List[str]] = {
        n: list(dict.fromkeys(p for p in prerequisites.get(n, []) if p in position)) for n in nodes
    }
    dependents: Dict[str, List[str]] = {n: [] for n in nodes}
    for n in nodes:
        for p in prereqs[n]:
            if p == n:
                raise CycleDetected([n, n])
            dependents[p].append(n)

    # Kahn's algorithm; ties broken by declaration order so plans are stable.
    indegree = {n: len(prereqs[n]) for n in nodes}
    ready = [(position[n], n) for n in nodes if indegree[n] == 0]
    heapq.heapify(ready)
    order: List[str] = []
    while ready:
        _, n = heapq.heappop(ready)
        order.append(n)
        for d in dependents[n]:
            indegree[d] -= 1
            if indegree[d] == 0:
                heapq.heappush(ready, (position[d], d))

    if len(order) != len(nodes):
        remaining = [n for n in nodes if n not in set(order)]
        raise CycleDetected(_find_cycle(remaining, prereqs) or remaining)

    return DependencyGraph(nodes=nodes, prerequisites=prereqs, dependents=dependents, order=order)


def _find_cycle(candidates: List[str], prereqs: Mapping[str, List[str]]) -> Optional[List[str]]:
    candidate_set = set(candidates)
    visiting: List[str] = []
    on_path: Set[str] = set()
    done: Set[str] = set()

    def visit(n: str) -> Optional[List[str]]:
        visiting.append(n)
        on_path.add(n)
        for p in prereqs.get(n, []):
            if p not in candidate_set or p in done:
                continue
            if p in on_path:
                return visiting[visiting.index(p):] + [p]
            found = visit(p)
            if found:
                return found
        visiting.pop()
        on_path.discard(n)
        done.add(n)
        return None

    for n in candidates:
        if n not in done:
            found = visit(n)
            if found:
                return found
    return None
