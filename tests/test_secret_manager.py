import logging
import string

import pytest

from provisioner.services.errors import ConflictError, PolicyViolation, ReferencedResourceError
from provisioner.services.providers import InMemorySecretStore
from provisioner.services.secret_manager import SecretLifecycleManager, SecretPolicy, SecretReference
from provisioner.services.utils import REDACTED, RedactingFilter, redact_text


@pytest.fixture
def manager():
    return SecretLifecycleManager(InMemorySecretStore())


def test_generate_honours_policy():
    policy = SecretPolicy(length=24, min_lower=2, min_upper=3, min_digits=4, min_symbols=2)
    value = SecretLifecycleManager.generate(policy)

    assert len(value) == 24
    assert sum(c in string.ascii_lowercase for c in value) >= 2
    assert sum(c in string.ascii_uppercase for c in value) >= 3
    assert sum(c in string.digits for c in value) >= 4
    assert sum(c in policy.symbols for c in value) >= 2


def test_generate_without_symbols_is_alphanumeric():
    value = SecretLifecycleManager.generate(SecretPolicy(length=40))
    assert value.isalnum()


def test_excluded_characters_never_appear():
    policy = SecretPolicy(length=64, exclude_characters="0O1lI")
    value = SecretLifecycleManager.generate(policy)
    assert not set(value) & set("0O1lI")


def test_two_generations_differ():
    policy = SecretPolicy()
    assert SecretLifecycleManager.generate(policy) != SecretLifecycleManager.generate(policy)


@pytest.mark.parametrize("policy", [
    SecretPolicy(length=0),
    SecretPolicy(length=3, min_lower=1, min_upper=1, min_digits=1, min_symbols=1),
    SecretPolicy(length=8, min_digits=1, exclude_characters=string.digits),
    SecretPolicy(length=8, min_lower=-1),
])
def test_unsatisfiable_policies_are_rejected(policy):
    with pytest.raises(PolicyViolation):
        SecretLifecycleManager.generate(policy)


def test_policy_from_declaration_attributes():
    policy = SecretPolicy.from_attributes({"name": "db", "length": 20, "min_symbols": 2})
    assert policy.length == 20
    assert policy.min_symbols == 2
    assert "symbols" in policy.pools()


@pytest.mark.parametrize("attributes", [
    {"length": "32"},
    {"min_digits": 1.5},
    {"length": True},
    {"allow_symbols": "yes"},
    {"symbols": ["!", "#"]},
    {"exclude_characters": 0},
])
def test_policy_attributes_must_have_the_right_type(attributes):
    with pytest.raises(PolicyViolation):
        SecretPolicy.from_attributes(attributes)


def test_store_twice_without_rotation_conflicts_and_keeps_first_value(manager):
    policy = SecretPolicy()
    first = manager.generate(policy)
    ref = manager.store("labs/dev/db", first)

    with pytest.raises(ConflictError):
        manager.store("labs/dev/db", manager.generate(policy))

    assert manager.store_backend.get_secret("labs/dev/db") == first
    assert manager.store_backend.current_version("labs/dev/db") == ref.version == "v1"


def test_storing_the_same_value_is_idempotent(manager):
    value = manager.generate(SecretPolicy())
    assert manager.store("s", value) == manager.store("s", value)
    assert manager.store_backend.current_version("s") == "v1"


def test_rotation_stores_a_new_version(manager):
    policy = SecretPolicy()
    manager.store("s", manager.generate(policy))
    replacement = manager.generate(policy)

    ref = manager.store("s", replacement, rotate=True)

    assert ref.version == "v2"
    assert manager.store_backend.get_secret("s") == replacement


def test_ensure_generates_exactly_once(manager):
    first = manager.ensure("s", SecretPolicy())
    second = manager.ensure("s", SecretPolicy())

    assert first == second
    assert str(first) == "secret:s:v1"


def test_ensure_with_rotation(manager):
    manager.ensure("s", SecretPolicy())
    assert manager.ensure("s", SecretPolicy(), rotate=True) == SecretReference("s", "v2")


def test_delete_refuses_while_referenced(manager):
    manager.ensure("s", SecretPolicy())
    manager.bind("s", "db")

    with pytest.raises(ReferencedResourceError) as exc:
        manager.delete("s")
    assert exc.value.dependents == ["db"]
    assert manager.exists("s")

    manager.unbind("s", "db")
    manager.delete("s")
    assert not manager.exists("s")


def test_unbind_all_releases_every_binding(manager):
    manager.bind("a", "db")
    manager.bind("b", "db")
    manager.bind("b", "app")
    manager.unbind_all("db")

    assert manager.dependents("a") == []
    assert manager.dependents("b") == ["app"]


def test_generated_values_are_masked_in_logs():
    value = SecretLifecycleManager.generate(SecretPolicy(length=32))
    assert redact_text(f"password={value}") == f"password={REDACTED}"

    record = logging.LogRecord("provisioner.test", logging.INFO, __file__, 1,
                               "connecting with %s", (value,), None)
    assert RedactingFilter().filter(record)
    assert value not in record.getMessage()
    assert REDACTED in record.getMessage()
