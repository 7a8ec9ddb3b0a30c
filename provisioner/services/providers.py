"""
External collaborators: the cloud resource API and the secret store.

Both are consumed as opaque services. The in-memory implementations back the
`memory` provider and the test suite; the HTTP implementations talk to a REST
facade in front of the real control plane and map HTTP failures onto the
orchestrator's error taxonomy.
"""

from __future__ import annotations
import copy
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import requests

from .errors import (
    ConflictError,
    NotFound,
    OrchestratorError,
    PermanentExternalError,
    TransientExternalError,
)

logger = logging.getLogger(__name__)

TRANSIENT_STATUS = {429, 500, 502, 503, 504}


class ResourceAPI(ABC):
    @abstractmethod
    def create(self, type_: str, attributes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """Create a resource; returns (external id, observed attributes)."""

    @abstractmethod
    def read(self, external_id: str) -> Dict[str, Any]:
        """Observed attributes, or NotFound."""

    @abstractmethod
    def update(self, external_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def delete(self, external_id: str) -> None:
        ...


class SecretStore(ABC):
    @abstractmethod
    def put_secret(self, name: str, value: str) -> str:
        """Store a new version; returns the version id."""

    @abstractmethod
    def get_secret(self, name: str) -> str:
        ...

    @abstractmethod
    def current_version(self, name: str) -> str:
        ...

    @abstractmethod
    def delete_secret(self, name: str) -> None:
        ...


# -------------------- In-memory --------------------

class InMemoryResourceAPI(ResourceAPI):
    """
    Deterministic stand-in for the control plane.

    `faults` maps a key to a list of exceptions raised, one per matching call,
    before calls start succeeding. Keys are tried in this order:
    "<op>:<name>", "<name>", "<op>:<type>", "<type>", where name is the
    resource's `name` attribute.
    """

    def __init__(self, faults: Optional[Dict[str, List[Exception]]] = None, region: str = "us-east-1"):
        self.region = region
        self.faults: Dict[str, List[Exception]] = {k: list(v) for k, v in (faults or {}).items()}
        self.calls: List[Tuple[str, str]] = []
        self._resources: Dict[str, Dict[str, Any]] = {}
        self._types: Dict[str, str] = {}
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def _label(self, type_: str, attributes: Dict[str, Any]) -> str:
        return str(attributes.get("name") or type_)

    def _maybe_fail(self, op: str, type_: str, attributes: Dict[str, Any]) -> None:
        name = attributes.get("name")
        keys = [f"{op}:{name}", str(name), f"{op}:{type_}", type_] if name else [f"{op}:{type_}", type_]
        with self._lock:
            for key in keys:
                queue = self.faults.get(key)
                if queue:
                    raise queue.pop(0)

    def create(self, type_: str, attributes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        self._maybe_fail("create", type_, attributes)
        with self._lock:
            service = type_.split(".", 1)[-1]
            external_id = f"{service.replace('_', '-')}-{next(self._counter):05d}"
            observed = copy.deepcopy(attributes)
            observed.update({
                "id": external_id,
                "arn": f"arn:aws:{service}:{self.region}:000000000000:{external_id}",
                "status": "available",
            })
            self._resources[external_id] = observed
            self._types[external_id] = type_
            self.calls.append(("create", self._label(type_, attributes)))
            return external_id, copy.deepcopy(observed)

    def read(self, external_id: str) -> Dict[str, Any]:
        with self._lock:
            if external_id not in self._resources:
                raise NotFound(external_id)
            return copy.deepcopy(self._resources[external_id])

    def update(self, external_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            if external_id not in self._resources:
                raise NotFound(external_id)
            type_ = self._types[external_id]
        self._maybe_fail("update", type_, attributes)
        with self._lock:
            current = self._resources[external_id]
            computed = {k: current[k] for k in ("id", "arn", "status") if k in current}
            observed = copy.deepcopy(attributes)
            observed.update(computed)
            self._resources[external_id] = observed
            self.calls.append(("update", self._label(type_, attributes)))
            return copy.deepcopy(observed)

    def delete(self, external_id: str) -> None:
        with self._lock:
            if external_id not in self._resources:
                raise NotFound(external_id)
            type_ = self._types[external_id]
            attributes = self._resources[external_id]
        self._maybe_fail("delete", type_, attributes)
        with self._lock:
            self._resources.pop(external_id, None)
            self._types.pop(external_id, None)
            self.calls.append(("delete", self._label(type_, attributes)))

    # Test helpers
    def mutate(self, external_id: str, **changes: Any) -> None:
        """Change a resource behind the orchestrator's back."""
        with self._lock:
            self._resources[external_id].update(changes)

    def forget(self, external_id: str) -> None:
        with self._lock:
            self._resources.pop(external_id, None)

    def resource_count(self) -> int:
        with self._lock:
            return len(self._resources)


class InMemorySecretStore(SecretStore):
    def __init__(self):
        self._versions: Dict[str, List[str]] = {}
        self._lock = threading.Lock()

    def put_secret(self, name: str, value: str) -> str:
        with self._lock:
            versions = self._versions.setdefault(name, [])
            versions.append(value)
            return f"v{len(versions)}"

    def get_secret(self, name: str) -> str:
        with self._lock:
            if not self._versions.get(name):
                raise NotFound(name)
            return self._versions[name][-1]

    def current_version(self, name: str) -> str:
        with self._lock:
            if not self._versions.get(name):
                raise NotFound(name)
            return f"v{len(self._versions[name])}"

    def delete_secret(self, name: str) -> None:
        with self._lock:
            if name not in self._versions:
                raise NotFound(name)
            del self._versions[name]


# -------------------- HTTP --------------------

def _raise_for_status(response: requests.Response, what: str) -> None:
    status = response.status_code
    if status < 400:
        return
    detail = response.text[:500]
    if status == 404:
        raise NotFound(what)
    if status == 409:
        raise ConflictError(f"{what}: concurrent modification ({detail})")
    if status in TRANSIENT_STATUS:
        retry_after = response.headers.get("Retry-After")
        try:
            delay = float(retry_after) if retry_after else None
        except ValueError:
            delay = None
        raise TransientExternalError(f"{what}: HTTP {status}", retry_after=delay)
    raise PermanentExternalError(f"{what}: HTTP {status}: {detail}")


class _HttpClient:
    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        if not base_url:
            raise ValueError("base_url is required for the HTTP provider")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if token:
            self.session.headers.update({"Authorization": f"Bearer {token}"})

    def _request(self, method: str, path: str, what: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientExternalError(f"{what}: {e.__class__.__name__}")
        except requests.RequestException as e:
            raise PermanentExternalError(f"{what}: {e}")
        _raise_for_status(response, what)
        return response

    @staticmethod
    def _json(response: requests.Response, what: str) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            raise PermanentExternalError(f"{what}: response is not JSON")
        if not isinstance(body, dict):
            raise PermanentExternalError(f"{what}: unexpected response shape")
        return body


class HttpResourceAPI(_HttpClient, ResourceAPI):
    """
    REST facade contract:
      POST   /resources        {"type", "attributes"} -> {"id", "attributes"}
      GET    /resources/{id}   -> {"attributes"}
      PUT    /resources/{id}   {"attributes"} -> {"attributes"}
      DELETE /resources/{id}
    """

    def create(self, type_: str, attributes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        what = f"create {type_}"
        body = self._json(self._request("POST", "/resources", what,
                                        json={"type": type_, "attributes": attributes}), what)
        if "id" not in body:
            raise PermanentExternalError(f"{what}: response has no id")
        return str(body["id"]), body.get("attributes") or {}

    def read(self, external_id: str) -> Dict[str, Any]:
        what = f"read {external_id}"
        return self._json(self._request("GET", f"/resources/{external_id}", what), what).get("attributes") or {}

    def update(self, external_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        what = f"update {external_id}"
        body = self._json(self._request("PUT", f"/resources/{external_id}", what,
                                        json={"attributes": attributes}), what)
        return body.get("attributes") or {}

    def delete(self, external_id: str) -> None:
        try:
            self._request("DELETE", f"/resources/{external_id}", f"delete {external_id}")
        except NotFound:
            logger.info("Resource %s not found (may already be deleted)", external_id)


class HttpSecretStore(_HttpClient, SecretStore):
    """
    REST facade contract:
      PUT    /secrets/{name}          {"value"} -> {"version"}
      GET    /secrets/{name}          -> {"value", "version"}
      DELETE /secrets/{name}
    """

    @staticmethod
    def _path(name: str) -> str:
        # Names such as "labs/dev/db-master-password" are a single path segment.
        return f"/secrets/{requests.utils.quote(name, safe='')}"

    def put_secret(self, name: str, value: str) -> str:
        what = f"put secret {name}"
        body = self._json(self._request("PUT", self._path(name), what, json={"value": value}), what)
        return str(body.get("version", ""))

    def get_secret(self, name: str) -> str:
        what = f"get secret {name}"
        body = self._json(self._request("GET", self._path(name), what), what)
        if "value" not in body:
            raise PermanentExternalError(f"{what}: response has no value")
        return body["value"]

    def current_version(self, name: str) -> str:
        what = f"describe secret {name}"
        body = self._json(self._request("GET", self._path(name), what), what)
        return str(body.get("version", ""))

    def delete_secret(self, name: str) -> None:
        self._request("DELETE", self._path(name), f"delete secret {name}")


def build_providers(settings) -> Tuple[ResourceAPI, SecretStore]:
    if settings.provider == "memory":
        return InMemoryResourceAPI(region=settings.region), InMemorySecretStore()
    if settings.provider == "http":
        resources = HttpResourceAPI(settings.provider_url, settings.provider_token)
        secrets_url = settings.secrets_url or settings.provider_url
        return resources, HttpSecretStore(secrets_url, settings.provider_token)
    raise OrchestratorError(f"Unsupported provider: {settings.provider}. Supported providers: memory, http")
