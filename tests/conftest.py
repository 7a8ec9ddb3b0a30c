import logging
import os
import tempfile
from pathlib import Path

# provisioner.main builds its engine at import time; keep its state out of the repo.
os.environ.setdefault("LABSTACK_STATE_DIR", tempfile.mkdtemp(prefix="labstack-test-"))

import pytest

from provisioner.models import Stack
from provisioner.services.engine import OrchestratorEngine
from provisioner.services.loader import load_stack
from provisioner.services.providers import InMemoryResourceAPI, InMemorySecretStore
from provisioner.services.utils import EngineSettings

LAB_STACK = Path(__file__).resolve().parent.parent / "stacks" / "aws-labs.yaml"


@pytest.fixture(autouse=True)
def _fresh_log_handlers():
    # configure_logging binds a handler to whatever stderr is current; drop it
    # so the next test's capture gets a new one.
    yield
    root = logging.getLogger("provisioner")
    for handler in list(root.handlers):
        root.removeHandler(handler)


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(
        state_dir=tmp_path / "state",
        backoff_base=0.0,
        backoff_cap=0.0,
        ready_timeout=1.0,
        poll_interval=0.0,
    )


@pytest.fixture
def api():
    return InMemoryResourceAPI()


@pytest.fixture
def secret_store():
    return InMemorySecretStore()


@pytest.fixture
def engine(settings, api, secret_store):
    settings.state_dir.mkdir(parents=True, exist_ok=True)
    return OrchestratorEngine(settings, resources=api, secret_store=secret_store)


@pytest.fixture
def make_stack():
    def _make(declarations, project="labs", env="test"):
        return Stack(project=project, env=env, declarations=declarations)
    return _make


@pytest.fixture
def lab_stack():
    return load_stack(str(LAB_STACK))


@pytest.fixture
def chain_declarations():
    """network <- compute <- lb"""
    return {
        "network": {"type": "example.network", "attributes": {"name": "network"}},
        "compute": {"type": "example.compute", "attributes": {"name": "compute"}, "references": ["network"]},
        "lb": {"type": "example.lb", "attributes": {"name": "lb"}, "references": ["compute"]},
    }
