# provisioner/services/engine.py
from __future__ import annotations
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

from provisioner.models import Stack
from .errors import ConflictError, ValidationError
from .executor import ExecutionResult, PlanExecutor, RetryPolicy
from .graph import build_graph
from .planner import Plan, Planner, display_value
from .drift import DriftDetector
from .providers import ResourceAPI, SecretStore, build_providers
from .reconciler import Reconciler
from .reporting import format_plan, format_result
from .secret_manager import SecretLifecycleManager
from .service_registry import DEFAULT_REGISTRY, ServiceRegistry
from .state import StateStore
from .utils import EngineSettings, init_orchestrator_env
from .validator import DeclarationValidator

logger = logging.getLogger(__name__)


@dataclass
class Outcome:
    plan: Plan
    validation: Dict[str, Any]
    execution: Optional[ExecutionResult] = None
    outputs: Optional[Dict[str, Dict[str, Any]]] = None
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return self.execution is None or self.execution.success

    def report(self) -> str:
        text = format_plan(self.plan)
        if self.execution is not None:
            text += "\n" + format_result(self.execution)
        return text

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "preview": self.execution is None,
            "dryRun": self.dry_run,
            "success": self.success,
            "plan": self.plan.to_dict(),
            "validation": self.validation,
        }
        if self.execution is not None:
            body["result"] = self.execution.to_dict()
            body["report"] = format_result(self.execution)
        if self.outputs is not None:
            body["outputs"] = {
                decl_id: {k: display_value(k, v) for k, v in out.items()}
                for decl_id, out in self.outputs.items()
            }
        return body


def _empty_validation() -> Dict[str, Any]:
    return {"valid": True, "errors": [], "warnings": [], "suggestions": []}


class OrchestratorEngine:
    def __init__(
        self,
        settings: EngineSettings,
        resources: Optional[ResourceAPI] = None,
        secret_store: Optional[SecretStore] = None,
        registry: ServiceRegistry = DEFAULT_REGISTRY,
    ):
        if resources is None or secret_store is None:
            default_resources, default_store = build_providers(settings)
            resources = resources or default_resources
            secret_store = secret_store or default_store
        self.settings = settings
        self.resources = resources
        self.secrets = SecretLifecycleManager(secret_store)
        self.registry = registry
        self.validator = DeclarationValidator(registry)
        self.planner = Planner(DriftDetector(registry))
        self._states: Dict[Tuple[str, str], StateStore] = {}
        self._stack_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._running: Dict[Tuple[str, str], PlanExecutor] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls, state_dir: Optional[str] = None) -> "OrchestratorEngine":
        return cls(init_orchestrator_env(state_dir))

    # -------------------- Plumbing --------------------

    def state_for(self, project: str, env: str) -> StateStore:
        key = (project, env)
        with self._lock:
            if key not in self._states:
                self._states[key] = StateStore.for_stack(self.settings.state_dir, project, env)
            return self._states[key]

    def _stack_lock(self, project: str, env: str) -> threading.Lock:
        with self._lock:
            return self._stack_locks.setdefault((project, env), threading.Lock())

    def validate(self, stack: Stack):
        declarations = stack.declaration_list()
        graph = build_graph(declarations)
        validation = self.validator.validate(stack)
        if not validation["valid"]:
            raise ValidationError(validation["errors"])
        return declarations, graph, validation

    def _refresh(self, state: StateStore) -> None:
        state.refresh(self.resources, self.secrets, self.registry)
        snapshot = state.snapshot()
        for entry in snapshot.values():
            for ref in entry.interpolates:
                target = snapshot.get(ref)
                if target is not None and self.registry.is_secret(target.type):
                    self.secrets.bind(target.external_id, entry.id)

    def _check_rotate(self, stack: Stack, rotate: Iterable[str]) -> Tuple[str, ...]:
        rotate = tuple(rotate)
        bad = [r for r in rotate
               if r not in stack.declarations or not self.registry.is_secret(stack.declarations[r].type)]
        if bad:
            raise ValidationError([f"--rotate only applies to aws.secret declarations: {', '.join(bad)}"])
        return rotate

    def _execute(self, plan: Plan, state: StateStore, concurrency: Optional[int],
                 rotate: Iterable[str] = ()) -> ExecutionResult:
        executor = PlanExecutor(
            concurrency=concurrency or self.settings.concurrency,
            retry=RetryPolicy(self.settings.max_attempts, self.settings.backoff_base, self.settings.backoff_cap),
        )
        reconciler = Reconciler(
            plan, self.resources, self.secrets, state, self.registry,
            rotate=rotate,
            ready_timeout=self.settings.ready_timeout,
            poll_interval=self.settings.poll_interval,
            cancel_event=executor.cancel_event,
        )
        key = (plan.project, plan.env)
        with self._lock:
            self._running[key] = executor
        try:
            graph = {k: s.prerequisites for k, s in plan.steps.items()}
            return executor.run(graph, reconciler.run_step, order=plan.order)
        finally:
            with self._lock:
                self._running.pop(key, None)
            state.save()

    # -------------------- Operations --------------------

    def plan(self, stack: Stack, targets: Iterable[str] = (), rotate: Iterable[str] = ()) -> Outcome:
        declarations, graph, validation = self.validate(stack)
        rotate = self._check_rotate(stack, rotate)
        state = self.state_for(stack.project, stack.env)
        self._refresh(state)
        plan = self.planner.plan_apply(stack.project, stack.env, declarations, graph,
                                       state.snapshot(), targets, force_update=rotate)
        logger.info("Plan for %s-%s: %s", stack.project, stack.env, plan.summary())
        return Outcome(plan, validation)

    def apply(self, stack: Stack, targets: Iterable[str] = (), concurrency: Optional[int] = None,
              dry_run: bool = False, rotate: Iterable[str] = ()) -> Outcome:
        lock = self._stack_lock(stack.project, stack.env)
        if not lock.acquire(blocking=False):
            raise ConflictError(f"Another operation is already running for {stack.project}-{stack.env}")
        try:
            outcome = self.plan(stack, targets, rotate)
            outcome.dry_run = dry_run
            if dry_run:
                return outcome
            state = self.state_for(stack.project, stack.env)
            outcome.execution = self._execute(outcome.plan, state, concurrency, rotate)
            outcome.outputs = state.outputs()
            if not outcome.execution.success:
                logger.error("Apply for %s-%s did not complete", stack.project, stack.env)
            return outcome
        finally:
            lock.release()

    def destroy(self, project: str, env: str, targets: Iterable[str] = (),
                concurrency: Optional[int] = None, dry_run: bool = False) -> Outcome:
        lock = self._stack_lock(project, env)
        if not lock.acquire(blocking=False):
            raise ConflictError(f"Another operation is already running for {project}-{env}")
        try:
            state = self.state_for(project, env)
            self._refresh(state)
            plan = self.planner.plan_destroy(project, env, state.snapshot(), targets)
            outcome = Outcome(plan, _empty_validation(), dry_run=dry_run)
            if dry_run:
                return outcome
            outcome.execution = self._execute(plan, state, concurrency)
            outcome.outputs = state.outputs()
            return outcome
        finally:
            lock.release()

    def cancel(self, project: str, env: str) -> bool:
        with self._lock:
            executor = self._running.get((project, env))
        if executor is None:
            return False
        executor.cancel()
        return True
