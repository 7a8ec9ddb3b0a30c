"""
Secret Lifecycle Manager

Generates credentials exactly once per logical secret, persists them in the
secret store and hands dependents an opaque reference instead of the value.
Values are registered with the log redaction filter as soon as they exist.
"""

from __future__ import annotations
import logging
import secrets
import string
import threading
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Mapping, Set

from .errors import ConflictError, NotFound, PolicyViolation, ReferencedResourceError
from .providers import SecretStore
from .utils import register_secret_value

logger = logging.getLogger(__name__)

MAX_SECRET_LENGTH = 4096
# RDS master passwords reject '/', '@', '"' and spaces.
DEFAULT_SYMBOLS = "!#$%&*()-_=+[]{}<>:?"


@dataclass(frozen=True)
class SecretPolicy:
    length: int = 32
    min_lower: int = 1
    min_upper: int = 1
    min_digits: int = 1
    min_symbols: int = 0
    allow_symbols: bool = False
    symbols: str = DEFAULT_SYMBOLS
    exclude_characters: str = ""

    @classmethod
    def from_attributes(cls, attributes: Mapping[str, Any]) -> "SecretPolicy":
        known = {}
        for f in fields(cls):
            if f.name not in attributes:
                continue
            value = attributes[f.name]
            expected = type(f.default)
            # bool is an int subclass; counts and flags must not mix.
            if type(value) is not expected:
                raise PolicyViolation(
                    f"{f.name} must be {expected.__name__}, got {type(value).__name__} {value!r}"
                )
            known[f.name] = value
        return cls(**known)

    def pools(self) -> Dict[str, str]:
        excluded = set(self.exclude_characters)
        classes = {
            "lower": string.ascii_lowercase,
            "upper": string.ascii_uppercase,
            "digits": string.digits,
        }
        if self.allow_symbols or self.min_symbols > 0:
            classes["symbols"] = self.symbols
        return {k: "".join(c for c in v if c not in excluded) for k, v in classes.items()}

    def minimums(self) -> Dict[str, int]:
        return {
            "lower": self.min_lower,
            "upper": self.min_upper,
            "digits": self.min_digits,
            "symbols": self.min_symbols,
        }

    def check(self) -> None:
        if self.length < 1:
            raise PolicyViolation(f"Secret length must be positive, got {self.length}")
        if self.length > MAX_SECRET_LENGTH:
            raise PolicyViolation(f"Secret length {self.length} exceeds maximum of {MAX_SECRET_LENGTH}")
        minimums = self.minimums()
        if any(v < 0 for v in minimums.values()):
            raise PolicyViolation("Minimum character counts cannot be negative")
        required = sum(minimums.values())
        if required > self.length:
            raise PolicyViolation(
                f"Policy requires at least {required} characters but length is {self.length}"
            )
        pools = self.pools()
        for cls_name, minimum in minimums.items():
            if minimum > 0 and not pools.get(cls_name):
                raise PolicyViolation(
                    f"Policy requires {minimum} {cls_name} character(s) but all of them are excluded"
                )
        if not "".join(pools.values()):
            raise PolicyViolation("Policy leaves no characters to choose from")


@dataclass(frozen=True)
class SecretReference:
    name: str
    version: str

    def __str__(self) -> str:
        return f"secret:{self.name}:{self.version}"


class SecretLifecycleManager:
    def __init__(self, store: SecretStore):
        self.store_backend = store
        self._bindings: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()

    @staticmethod
    def generate(policy: SecretPolicy) -> str:
        policy.check()
        pools = policy.pools()
        chars: List[str] = []
        for cls_name, minimum in policy.minimums().items():
            if minimum:
                chars.extend(secrets.choice(pools[cls_name]) for _ in range(minimum))
        everything = "".join(pools.values())
        chars.extend(secrets.choice(everything) for _ in range(policy.length - len(chars)))
        secrets.SystemRandom().shuffle(chars)
        value = "".join(chars)
        register_secret_value(value)
        return value

    def exists(self, name: str) -> bool:
        try:
            self.store_backend.current_version(name)
            return True
        except NotFound:
            return False

    def store(self, name: str, value: str, rotate: bool = False) -> SecretReference:
        """
        Idempotent for the same value. A different value is a conflict unless
        rotate is set, and the stored value is left untouched in that case.
        """
        register_secret_value(value)
        with self._lock:
            try:
                existing = self.store_backend.get_secret(name)
            except NotFound:
                existing = None
            if existing is not None:
                register_secret_value(existing)
                if existing == value:
                    return SecretReference(name, self.store_backend.current_version(name))
                if not rotate:
                    raise ConflictError(
                        f"Secret '{name}' already holds a different value; set rotate to replace it"
                    )
            version = self.store_backend.put_secret(name, value)
        logger.info("Stored secret %s version %s", name, version)
        return SecretReference(name, version)

    def ensure(self, name: str, policy: SecretPolicy, rotate: bool = False) -> SecretReference:
        with self._lock:
            if not rotate and self.exists(name):
                return SecretReference(name, self.store_backend.current_version(name))
            value = self.generate(policy)
            return self.store(name, value, rotate=rotate)

    # -------------------- References --------------------

    def bind(self, name: str, dependent: str) -> None:
        with self._lock:
            self._bindings.setdefault(name, set()).add(dependent)

    def unbind(self, name: str, dependent: str) -> None:
        with self._lock:
            self._bindings.get(name, set()).discard(dependent)

    def unbind_all(self, dependent: str) -> None:
        with self._lock:
            for deps in self._bindings.values():
                deps.discard(dependent)

    def dependents(self, name: str) -> List[str]:
        with self._lock:
            return sorted(self._bindings.get(name, set()))

    def delete(self, name: str) -> None:
        with self._lock:
            live = self._bindings.get(name)
            if live:
                raise ReferencedResourceError(name, list(live))
            try:
                self.store_backend.delete_secret(name)
            except NotFound:
                logger.info("Secret %s not found (may already be deleted)", name)
            self._bindings.pop(name, None)
