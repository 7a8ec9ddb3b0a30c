"""
Step execution against the external systems.

The executor decides *when* a step runs; the reconciler decides *what* running
it means: resolving interpolations against outputs of prerequisites that have
already succeeded, calling the resource API or the secret manager, waiting for
asynchronous provisioning, and recording the outcome in the snapshot.
"""

from __future__ import annotations
import logging
import threading
import time
from typing import Any, Dict, Iterable, Optional, Set

from provisioner.models import Declaration, ObservedResource
from .errors import CancelledError, NotFound, ReferencedResourceError, TransientExternalError
from .graph import declaration_references
from .interpolation import find_references, resolve
from .planner import Plan, Step, StepOp
from .providers import ResourceAPI
from .secret_manager import SecretLifecycleManager, SecretPolicy
from .service_registry import DEFAULT_REGISTRY, ServiceRegistry
from .state import StateStore

logger = logging.getLogger(__name__)

PENDING_STATUSES = {"pending", "creating", "provisioning", "modifying"}


def secret_name(project: str, env: str, decl_id: str, attributes: Dict[str, Any]) -> str:
    return str(attributes.get("name") or f"{project}/{env}/{decl_id}")


class Reconciler:
    def __init__(
        self,
        plan: Plan,
        api: ResourceAPI,
        secrets: SecretLifecycleManager,
        state: StateStore,
        registry: ServiceRegistry = DEFAULT_REGISTRY,
        rotate: Iterable[str] = (),
        ready_timeout: float = 300.0,
        poll_interval: float = 2.0,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.plan = plan
        self.api = api
        self.secrets = secrets
        self.state = state
        self.registry = registry
        self.rotate: Set[str] = set(rotate)
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self._cancel = cancel_event or threading.Event()
        # decl id -> external id for creates that went through but have not
        # been confirmed ready yet, so a retry waits instead of creating twice.
        self._created: Dict[str, str] = {}
        self._lock = threading.Lock()

    def run_step(self, key: str) -> Dict[str, Any]:
        step = self.plan.steps[key]
        if step.op == StepOp.DELETE:
            self._delete(step)
            return {}
        return self._apply(step)

    # -------------------- create / update --------------------

    def _apply(self, step: Step) -> Dict[str, Any]:
        decl = step.declaration
        attributes = resolve(decl.attributes, self.state.outputs(), strict=True)
        if self.registry.is_secret(decl.type):
            external_id, outputs = self._apply_secret(decl, attributes)
        elif step.op == StepOp.CREATE:
            external_id, outputs = self._create(decl, attributes)
        else:
            entry = self.state.get(decl.id)
            if entry is None:
                raise NotFound(f"{decl.id} vanished from the snapshot before update")
            external_id = entry.external_id
            if attributes == entry.attributes:
                # Only the recorded references moved; nothing to send.
                outputs = dict(entry.outputs)
            else:
                outputs = self.api.update(external_id, attributes)
                outputs = self._wait_until_ready(external_id, outputs)

        interpolated = sorted(find_references(decl.attributes))
        self.state.put(ObservedResource(
            id=decl.id,
            type=decl.type,
            external_id=external_id,
            attributes=attributes,
            outputs=outputs,
            references=declaration_references(decl),
            interpolates=interpolated,
        ))
        self._rebind(decl.id, interpolated)
        with self._lock:
            self._created.pop(decl.id, None)
        logger.info("%s %s (%s) -> %s", step.op.value, decl.id, decl.type, external_id)
        return outputs

    def _create(self, decl: Declaration, attributes: Dict[str, Any]):
        with self._lock:
            external_id = self._created.get(decl.id)
        if external_id is None:
            external_id, observed = self.api.create(decl.type, attributes)
            with self._lock:
                self._created[decl.id] = external_id
            # Record right away so a failed readiness wait never orphans it.
            self.state.put(ObservedResource(
                id=decl.id, type=decl.type, external_id=external_id,
                attributes=attributes, outputs=observed,
                references=declaration_references(decl),
                interpolates=sorted(find_references(decl.attributes)),
            ))
        else:
            logger.info("%s already created as %s; waiting for it to become ready", decl.id, external_id)
            observed = {"status": "pending"}
        return external_id, self._wait_until_ready(external_id, observed)

    def _apply_secret(self, decl: Declaration, attributes: Dict[str, Any]):
        name = secret_name(self.plan.project, self.plan.env, decl.id, attributes)
        policy = SecretPolicy.from_attributes(attributes)
        ref = self.secrets.ensure(name, policy, rotate=decl.id in self.rotate)
        return name, {"reference": str(ref), "name": name, "version": ref.version}

    def _wait_until_ready(self, external_id: str, observed: Dict[str, Any]) -> Dict[str, Any]:
        deadline = time.monotonic() + self.ready_timeout
        while str(observed.get("status", "")).lower() in PENDING_STATUSES:
            if time.monotonic() >= deadline:
                raise TransientExternalError(f"{external_id} still not ready after {self.ready_timeout:.0f}s")
            if self._cancel.wait(self.poll_interval):
                raise CancelledError(f"cancelled while waiting for {external_id} to become ready")
            try:
                observed = self.api.read(external_id)
            except NotFound:
                # Eventual consistency: the resource may not be readable yet.
                logger.debug("%s not readable yet", external_id)
        return observed

    def _rebind(self, decl_id: str, interpolated: Iterable[str]) -> None:
        self.secrets.unbind_all(decl_id)
        for ref in interpolated:
            entry = self.state.get(ref)
            if entry is not None and self.registry.is_secret(entry.type):
                self.secrets.bind(entry.external_id, decl_id)

    # -------------------- delete --------------------

    def _delete(self, step: Step) -> None:
        entry = self.state.get(step.declaration_id)
        if entry is None:
            logger.info("%s already absent from snapshot", step.declaration_id)
            return

        recreating = f"{StepOp.CREATE.value}:{entry.id}" in self.plan.steps
        if not recreating:
            live = [d for d in self.state.dependents_of(entry.id) if d != entry.id]
            if live:
                raise ReferencedResourceError(entry.id, live)

        if self.registry.is_secret(entry.type):
            self.secrets.delete(entry.external_id)
        else:
            try:
                self.api.delete(entry.external_id)
            except NotFound:
                logger.info("%s (%s) not found (may already be deleted)", entry.id, entry.external_id)
        self.state.remove(entry.id)
        self.secrets.unbind_all(entry.id)
        logger.info("deleted %s (%s)", entry.id, entry.external_id)
