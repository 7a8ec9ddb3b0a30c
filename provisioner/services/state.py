"""
Observed State Snapshot

One JSON document per <project>.<env> under the state directory, holding the
last known materialised state of every declaration. Workers record outcomes
here while a plan runs, so all access goes through the store's lock.
"""

from __future__ import annotations
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from provisioner.models import ObservedResource
from .errors import NotFound, OrchestratorError, TransientExternalError
from .naming import stack_name
from .providers import ResourceAPI
from .secret_manager import SecretLifecycleManager
from .service_registry import DEFAULT_REGISTRY, ServiceRegistry

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StateStore:
    def __init__(self, path: Optional[Path] = None, project: str = "labs", env: str = "dev"):
        self.path = path
        self.project = project
        self.env = env
        self._resources: Dict[str, ObservedResource] = {}
        self._lock = threading.RLock()
        if path is not None and path.exists():
            self.load()

    @classmethod
    def for_stack(cls, state_dir: Path, project: str, env: str) -> "StateStore":
        state_dir = Path(state_dir)
        state_dir.mkdir(parents=True, exist_ok=True)
        return cls(state_dir / f"{stack_name(project, env)}.json", project, env)

    def load(self) -> None:
        with self._lock:
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                raise OrchestratorError(f"Cannot read state file {self.path}: {e}")
            if data.get("version") != STATE_FORMAT_VERSION:
                raise OrchestratorError(
                    f"Unsupported state format version {data.get('version')!r} in {self.path}"
                )
            self._resources = {
                k: ObservedResource(**v) for k, v in (data.get("resources") or {}).items()
            }

    def save(self) -> None:
        if self.path is None:
            return
        with self._lock:
            data = {
                "version": STATE_FORMAT_VERSION,
                "project": self.project,
                "env": self.env,
                "resources": {k: v.model_dump() for k, v in self._resources.items()},
            }
            fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".state-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2, sort_keys=True, default=str)
                os.replace(tmp, self.path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise

    # -------------------- Access --------------------

    def get(self, decl_id: str) -> Optional[ObservedResource]:
        with self._lock:
            r = self._resources.get(decl_id)
            return r.model_copy(deep=True) if r else None

    def put(self, resource: ObservedResource) -> None:
        with self._lock:
            self._resources[resource.id] = resource.model_copy(deep=True)
            self.save()

    def remove(self, decl_id: str) -> None:
        with self._lock:
            if self._resources.pop(decl_id, None) is not None:
                self.save()

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._resources.keys())

    def snapshot(self) -> Dict[str, ObservedResource]:
        with self._lock:
            return {k: v.model_copy(deep=True) for k, v in self._resources.items()}

    def outputs(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {k: dict(v.outputs) for k, v in self._resources.items()}

    def dependents_of(self, decl_id: str) -> List[str]:
        with self._lock:
            return sorted(k for k, v in self._resources.items() if decl_id in v.references)

    # -------------------- Refresh --------------------

    def refresh(self, api: ResourceAPI, secrets: SecretLifecycleManager,
                registry: ServiceRegistry = DEFAULT_REGISTRY) -> List[str]:
        """
        Re-read every recorded resource. Entries the external system no longer
        knows about are dropped so the planner recreates them. Returns the ids
        that were dropped.
        """
        dropped: List[str] = []
        with self._lock:
            for decl_id, entry in list(self._resources.items()):
                if registry.is_secret(entry.type):
                    if not secrets.exists(entry.external_id):
                        dropped.append(decl_id)
                    continue
                try:
                    observed = api.read(entry.external_id)
                except NotFound:
                    dropped.append(decl_id)
                    continue
                except TransientExternalError as e:
                    logger.warning("Refresh of %s deferred: %s", decl_id, e)
                    continue
                for key in entry.attributes:
                    if key in observed:
                        entry.attributes[key] = observed[key]
                entry.outputs = observed
            for decl_id in dropped:
                logger.info("%s no longer exists externally; dropping from snapshot", decl_id)
                self._resources.pop(decl_id, None)
            self.save()
        return dropped
