import json

import pytest

from provisioner.services.errors import ValidationError
from provisioner.services.loader import load_stack, parse_stack


def test_lab_stack_file(lab_stack):
    assert (lab_stack.project, lab_stack.env, lab_stack.region) == ("labs", "dev", "us-east-1")
    assert lab_stack.declarations["db"].attributes["password"] == "${db_password.reference}"
    assert lab_stack.declarations["web_asg"].references == ["http_listener"]


def test_bare_mapping_with_overrides():
    stack = parse_stack({"network": {"type": "example.network"}}, project="shop", env="prod")

    assert (stack.project, stack.env) == ("shop", "prod")
    [decl] = stack.declaration_list()
    assert decl.id == "network"
    assert decl.attributes == {}
    assert decl.references == []


def test_json_documents_load(tmp_path):
    path = tmp_path / "stack.json"
    path.write_text(json.dumps({"project": "p", "env": "e", "declarations": {"a": {"type": "t"}}}))

    stack = load_stack(str(path))

    assert stack.project == "p"
    assert list(stack.declarations) == ["a"]


def test_empty_declarations():
    assert parse_stack({"project": "p", "declarations": None}).declarations == {}
    assert parse_stack(None).declarations == {}


def test_unknown_top_level_keys():
    with pytest.raises(ValidationError) as exc:
        parse_stack({"declarations": {}, "nodes": []})
    assert "nodes" in exc.value.errors[0]


def test_top_level_must_be_a_mapping():
    with pytest.raises(ValidationError):
        parse_stack(["a", "b"])


def test_schema_errors_name_the_field():
    with pytest.raises(ValidationError) as exc:
        parse_stack({"vpc": {"attributes": {}}})
    assert exc.value.errors[0].startswith("declarations.vpc.type")


def test_missing_file(tmp_path):
    with pytest.raises(ValidationError) as exc:
        load_stack(str(tmp_path / "nope.yaml"))
    assert "Cannot read" in exc.value.errors[0]


def test_unparseable_file(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("vpc: [unclosed\n")
    with pytest.raises(ValidationError) as exc:
        load_stack(str(path))
    assert "Cannot parse" in exc.value.errors[0]
