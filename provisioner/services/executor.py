"""
Plan Executor

Runs a DAG of steps on a bounded worker pool. A single coordinator thread owns
the ready-queue: it submits a node once all of its prerequisites have
succeeded, and reacts to completions one at a time. A failure only blocks the
failed node's transitive dependents; independent branches keep going.

Per-node state machine:
    Pending -> InProgress -> {Succeeded, Failed, Cancelled}
    Pending -> {Skipped, Cancelled}
"""

from __future__ import annotations
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .errors import CancelledError, TransientExternalError

logger = logging.getLogger(__name__)


class NodeState(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    CANCELLED = "Cancelled"


_ALLOWED = {
    NodeState.PENDING: {NodeState.IN_PROGRESS, NodeState.SKIPPED, NodeState.CANCELLED},
    NodeState.IN_PROGRESS: {NodeState.SUCCEEDED, NodeState.FAILED, NodeState.CANCELLED},
}

TERMINAL = {NodeState.SUCCEEDED, NodeState.FAILED, NodeState.SKIPPED, NodeState.CANCELLED}


@dataclass
class NodeRun:
    key: str
    prerequisites: List[str]
    state: NodeState = NodeState.PENDING
    error: Optional[BaseException] = None
    blocked_by: List[str] = field(default_factory=list)
    attempts: int = 0
    result: Any = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def transition(self, new_state: NodeState, error: Optional[BaseException] = None) -> None:
        with self._lock:
            if new_state not in _ALLOWED.get(self.state, set()):
                raise RuntimeError(f"Illegal transition for {self.key}: {self.state.value} -> {new_state.value}")
            self.state = new_state
            if new_state == NodeState.IN_PROGRESS:
                self.started_at = time.monotonic()
            elif new_state in TERMINAL:
                self.finished_at = time.monotonic()
            if error is not None:
                self.error = error

    @property
    def cause(self) -> Optional[str]:
        if self.error is not None:
            return f"{self.error.__class__.__name__}: {self.error}"
        if self.blocked_by:
            return f"blocked by {' <- '.join(self.blocked_by)}"
        return None


@dataclass
class RetryPolicy:
    max_attempts: int = 5
    base: float = 0.5
    cap: float = 8.0

    def delay(self, attempt: int) -> float:
        return min(self.cap, self.base * (2 ** (attempt - 1)))


@dataclass
class ExecutionResult:
    nodes: Dict[str, NodeRun]
    started: List[str] = field(default_factory=list)
    finished: List[str] = field(default_factory=list)
    cancelled: bool = False

    def in_state(self, state: NodeState) -> List[str]:
        return [k for k, n in self.nodes.items() if n.state == state]

    @property
    def success(self) -> bool:
        return all(n.state == NodeState.SUCCEEDED for n in self.nodes.values())

    def states(self) -> Dict[str, str]:
        return {k: n.state.value for k, n in self.nodes.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "cancelled": self.cancelled,
            "order": list(self.finished),
            "nodes": {
                k: {
                    "state": n.state.value,
                    "attempts": n.attempts,
                    "cause": n.cause,
                    "blocked_by": list(n.blocked_by),
                }
                for k, n in self.nodes.items()
            },
        }


class PlanExecutor:
    def __init__(self, concurrency: int = 4, retry: Optional[RetryPolicy] = None):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self.retry = retry or RetryPolicy()
        self._cancel = threading.Event()

    def cancel(self) -> None:
        logger.warning("Cancellation requested; finishing in-flight steps")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    def run(
        self,
        graph: Mapping[str, Sequence[str]],
        runner: Callable[[str], Any],
        order: Optional[Sequence[str]] = None,
    ) -> ExecutionResult:
        """
        graph maps each node key to its prerequisite keys. `order` only breaks
        ties between ready nodes; correctness comes from the graph.
        """
        order = list(order) if order is not None else list(graph.keys())
        nodes = {k: NodeRun(k, [p for p in graph[k] if p in graph]) for k in order}
        dependents: Dict[str, List[str]] = {k: [] for k in nodes}
        for k, n in nodes.items():
            for p in n.prerequisites:
                dependents[p].append(k)

        result = ExecutionResult(nodes)
        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="provision") as pool:
            while True:
                if not self._cancel.is_set():
                    for key in order:
                        if len(in_flight) >= self.concurrency:
                            break
                        node = nodes[key]
                        if node.state != NodeState.PENDING:
                            continue
                        if all(nodes[p].state == NodeState.SUCCEEDED for p in node.prerequisites):
                            node.transition(NodeState.IN_PROGRESS)
                            result.started.append(key)
                            logger.info("[%s] started", key)
                            in_flight[pool.submit(self._attempt, node, runner)] = key

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    key = in_flight.pop(future)
                    self._settle(nodes[key], future, dependents, nodes)
                    result.finished.append(key)

        for key in order:
            node = nodes[key]
            if node.state == NodeState.PENDING:
                node.transition(NodeState.CANCELLED)
                result.finished.append(key)
        result.cancelled = self._cancel.is_set()
        return result

    def _attempt(self, node: NodeRun, runner: Callable[[str], Any]) -> Any:
        attempt = 0
        while True:
            attempt += 1
            node.attempts = attempt
            try:
                return runner(node.key)
            except TransientExternalError as e:
                if attempt >= self.retry.max_attempts:
                    raise
                delay = self.retry.delay(attempt)
                if e.retry_after is not None:
                    delay = min(self.retry.cap, max(delay, e.retry_after))
                logger.warning("[%s] transient error (attempt %d/%d), retrying in %.2fs: %s",
                               node.key, attempt, self.retry.max_attempts, delay, e)
                if self._cancel.wait(delay):
                    raise CancelledError(f"{node.key} cancelled while waiting to retry")

    def _settle(self, node: NodeRun, future: Future, dependents: Mapping[str, List[str]],
                nodes: Mapping[str, NodeRun]) -> None:
        try:
            node.result = future.result()
        except CancelledError as e:
            node.transition(NodeState.CANCELLED, e)
            logger.warning("[%s] cancelled", node.key)
            return
        except Exception as e:
            node.transition(NodeState.FAILED, e)
            logger.error("[%s] failed after %d attempt(s): %s", node.key, node.attempts, e)
            self._skip_dependents(node, dependents, nodes)
            return
        node.transition(NodeState.SUCCEEDED)
        logger.info("[%s] succeeded", node.key)

    @staticmethod
    def _skip_dependents(failed: NodeRun, dependents: Mapping[str, List[str]],
                         nodes: Mapping[str, NodeRun]) -> None:
        queue = [(d, [failed.key]) for d in dependents[failed.key]]
        while queue:
            key, chain = queue.pop(0)
            node = nodes[key]
            if node.state != NodeState.PENDING:
                continue
            node.blocked_by = chain
            node.transition(NodeState.SKIPPED)
            logger.warning("[%s] skipped: blocked by %s", key, " <- ".join(chain))
            queue.extend((d, [key] + chain) for d in dependents[key])
