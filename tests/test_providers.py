from unittest import mock

import pytest
import requests

from provisioner.services.errors import (
    ConflictError,
    NotFound,
    OrchestratorError,
    PermanentExternalError,
    TransientExternalError,
)
from provisioner.services.providers import (
    HttpResourceAPI,
    HttpSecretStore,
    InMemoryResourceAPI,
    InMemorySecretStore,
    build_providers,
)
from provisioner.services.utils import EngineSettings


def response(status, body=None, headers=None):
    r = mock.Mock()
    r.status_code = status
    r.text = "" if body is None else str(body)
    r.headers = headers or {}
    if body is None:
        r.json.side_effect = ValueError("no body")
    else:
        r.json.return_value = body
    return r


@pytest.fixture
def session():
    s = mock.Mock()
    s.headers = {}
    return s


@pytest.fixture
def http_api(session):
    return HttpResourceAPI("https://control.example.com/", token="t0k", session=session)


def test_create_posts_type_and_attributes(http_api, session):
    session.request.return_value = response(201, {"id": "vpc-123", "attributes": {"status": "pending"}})

    external_id, observed = http_api.create("aws.vpc", {"cidr_block": "10.0.0.0/16"})

    assert (external_id, observed) == ("vpc-123", {"status": "pending"})
    session.request.assert_called_once_with(
        "POST", "https://control.example.com/resources", timeout=30.0,
        json={"type": "aws.vpc", "attributes": {"cidr_block": "10.0.0.0/16"}},
    )
    assert session.headers["Authorization"] == "Bearer t0k"


def test_not_found(http_api, session):
    session.request.return_value = response(404, {"message": "missing"})
    with pytest.raises(NotFound):
        http_api.read("vpc-123")


def test_throttling_is_transient_with_retry_after(http_api, session):
    session.request.return_value = response(429, {"message": "slow down"}, headers={"Retry-After": "3"})
    with pytest.raises(TransientExternalError) as exc:
        http_api.update("vpc-123", {})
    assert exc.value.retry_after == 3.0


@pytest.mark.parametrize("status", [500, 502, 503, 504])
def test_server_errors_are_transient(http_api, session, status):
    session.request.return_value = response(status)
    with pytest.raises(TransientExternalError) as exc:
        http_api.read("vpc-123")
    assert exc.value.retry_after is None


def test_conflict(http_api, session):
    session.request.return_value = response(409, {"message": "in use"})
    with pytest.raises(ConflictError):
        http_api.update("sg-1", {"name": "x"})


def test_client_errors_are_permanent(http_api, session):
    session.request.return_value = response(400, {"message": "InvalidParameterValue"})
    with pytest.raises(PermanentExternalError):
        http_api.create("aws.vpc", {})


def test_network_errors_are_transient(http_api, session):
    session.request.side_effect = requests.ConnectionError("connection reset")
    with pytest.raises(TransientExternalError):
        http_api.read("vpc-123")


def test_non_json_response_is_permanent(http_api, session):
    session.request.return_value = response(200)
    with pytest.raises(PermanentExternalError):
        http_api.read("vpc-123")


def test_delete_of_missing_resource_is_ignored(http_api, session):
    session.request.return_value = response(404)
    http_api.delete("vpc-123")


def test_secret_store_round_trip(session):
    store = HttpSecretStore("https://secrets.example.com", session=session)
    session.request.return_value = response(200, {"version": "v7"})

    assert store.put_secret("labs/dev/db", "s3cr3t") == "v7"
    assert store.current_version("labs/dev/db") == "v7"
    session.request.assert_called_with("GET", "https://secrets.example.com/secrets/labs%2Fdev%2Fdb", timeout=30.0)


def test_base_url_is_required():
    with pytest.raises(ValueError):
        HttpResourceAPI("")


def test_in_memory_faults_are_consumed_in_order():
    api = InMemoryResourceAPI(faults={
        "create:web": [TransientExternalError("Throttling")],
        "aws.instance": [PermanentExternalError("InsufficientInstanceCapacity")],
    })

    with pytest.raises(TransientExternalError):
        api.create("aws.instance", {"name": "web"})
    with pytest.raises(PermanentExternalError):
        api.create("aws.instance", {"name": "web"})
    external_id, observed = api.create("aws.instance", {"name": "web"})

    assert external_id == "instance-00001"
    assert observed["status"] == "available"
    assert observed["arn"].startswith("arn:aws:instance:us-east-1:")
    assert api.calls == [("create", "web")]


def test_in_memory_update_keeps_computed_attributes():
    api = InMemoryResourceAPI()
    external_id, _ = api.create("aws.vpc", {"cidr_block": "10.0.0.0/16"})

    observed = api.update(external_id, {"cidr_block": "10.0.0.0/16", "enable_dns_hostnames": True})

    assert observed["id"] == external_id
    assert observed["enable_dns_hostnames"] is True
    api.delete(external_id)
    with pytest.raises(NotFound):
        api.read(external_id)


def test_in_memory_secret_versions():
    store = InMemorySecretStore()
    assert store.put_secret("s", "a") == "v1"
    assert store.put_secret("s", "b") == "v2"
    assert store.get_secret("s") == "b"
    store.delete_secret("s")
    with pytest.raises(NotFound):
        store.current_version("s")


def test_build_providers(tmp_path):
    resources, secrets = build_providers(EngineSettings(state_dir=tmp_path))
    assert isinstance(resources, InMemoryResourceAPI)
    assert isinstance(secrets, InMemorySecretStore)

    resources, secrets = build_providers(EngineSettings(
        state_dir=tmp_path, provider="http", provider_url="https://control.example.com"))
    assert isinstance(resources, HttpResourceAPI)
    assert secrets.base_url == "https://control.example.com"

    with pytest.raises(OrchestratorError):
        build_providers(EngineSettings(state_dir=tmp_path, provider="terraform"))
