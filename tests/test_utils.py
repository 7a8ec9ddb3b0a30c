import pytest

from provisioner.services.naming import bucket_name, stack_name
from provisioner.services.state import StateStore
from provisioner.models import ObservedResource
from provisioner.services.utils import EngineSettings, get_allowed_origins, init_orchestrator_env


def test_settings_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("LABSTACK_PROVIDER", "HTTP")
    monkeypatch.setenv("LABSTACK_PROVIDER_URL", "https://control.example.com")
    monkeypatch.setenv("LABSTACK_CONCURRENCY", "8")
    monkeypatch.setenv("LABSTACK_BACKOFF_CAP", "2.5")
    monkeypatch.setenv("AWS_REGION", "eu-west-1")

    settings = EngineSettings.from_env(str(tmp_path))

    assert settings.state_dir == tmp_path.resolve()
    assert settings.provider == "http"
    assert settings.concurrency == 8
    assert settings.backoff_cap == 2.5
    assert settings.max_attempts == 5
    assert settings.region == "eu-west-1"


@pytest.mark.parametrize("name,value", [
    ("LABSTACK_CONCURRENCY", "many"),
    ("LABSTACK_CONCURRENCY", "0"),
    ("LABSTACK_MAX_ATTEMPTS", "0"),
    ("LABSTACK_BACKOFF_BASE", "fast"),
])
def test_bad_settings(monkeypatch, tmp_path, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        EngineSettings.from_env(str(tmp_path))


def test_init_creates_state_dir(monkeypatch, tmp_path):
    target = tmp_path / "nested" / "state"
    monkeypatch.setenv("LABSTACK_STATE_DIR", str(tmp_path))

    settings = init_orchestrator_env(str(target))

    assert target.is_dir()
    assert settings.state_dir == target.resolve()


def test_allowed_origins(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "*")
    assert get_allowed_origins() == ["*"]
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "http://localhost:3000, https://labs.example.com,")
    assert get_allowed_origins() == ["http://localhost:3000", "https://labs.example.com"]


def test_names():
    assert stack_name("labs", "dev/blue") == "labs.dev-blue"
    assert stack_name("a-b", "c") != stack_name("a", "b-c")
    assert bucket_name("Assets_Bucket!") == "assets-bucket"
    assert bucket_name("a") == "a-s3"


def test_state_round_trips_through_disk(tmp_path):
    store = StateStore.for_stack(tmp_path, "labs", "dev")
    store.put(ObservedResource(id="vpc", type="aws.vpc", external_id="vpc-1",
                               attributes={"cidr_block": "10.0.0.0/16"}, outputs={"id": "vpc-1"}))
    store.put(ObservedResource(id="subnet", type="aws.subnet", external_id="subnet-1", references=["vpc"]))

    reloaded = StateStore.for_stack(tmp_path, "labs", "dev")

    assert sorted(reloaded.ids()) == ["subnet", "vpc"]
    assert reloaded.outputs()["vpc"] == {"id": "vpc-1"}
    assert reloaded.dependents_of("vpc") == ["subnet"]
    assert not list(tmp_path.glob(".state-*"))


def test_hyphenated_stacks_keep_separate_state(tmp_path):
    first = StateStore.for_stack(tmp_path, "a-b", "c")
    first.put(ObservedResource(id="vpc", type="aws.vpc", external_id="vpc-1"))

    second = StateStore.for_stack(tmp_path, "a", "b-c")

    assert second.ids() == []
    assert first.path != second.path
