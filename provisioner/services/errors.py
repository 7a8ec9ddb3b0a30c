"""
Error taxonomy for the provisioning orchestrator.

Validation errors are raised before any external call and are fatal to the
whole plan. Everything else is node-local: the executor records it on the
node that raised it and keeps running independent branches.
"""

from __future__ import annotations
from typing import List, Optional


class OrchestratorError(Exception):
    """Base class for every error the orchestrator raises on purpose."""


class ValidationError(OrchestratorError):
    """Malformed declaration set. Carries every problem found, not just the first."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) if self.errors else "invalid declaration set")


class CycleDetected(ValidationError):
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__([f"Dependency cycle detected: {' -> '.join(self.cycle)}"])


class UnresolvedReference(ValidationError):
    def __init__(self, declaration_id: str, missing: str):
        self.declaration_id = declaration_id
        self.missing = missing
        super().__init__([
            f"Declaration '{declaration_id}' references unknown declaration '{missing}'"
        ])


class TransientExternalError(OrchestratorError):
    """Throttling or propagation delay. Safe to retry."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class PermanentExternalError(OrchestratorError):
    """The external system rejected the request; retrying will not help."""


class NotFound(OrchestratorError):
    pass


class ConflictError(OrchestratorError):
    pass


class ReferencedResourceError(OrchestratorError):
    """Teardown of something that still has live dependents."""

    def __init__(self, resource: str, dependents: List[str]):
        self.resource = resource
        self.dependents = sorted(dependents)
        super().__init__(
            f"'{resource}' is still referenced by: {', '.join(self.dependents)}"
        )


class PolicyViolation(OrchestratorError):
    pass


class CancelledError(OrchestratorError):
    """Raised inside a worker when the plan was cancelled mid-retry."""


RETRYABLE = (TransientExternalError,)
