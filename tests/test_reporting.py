from provisioner.models import Declaration, ObservedResource
from provisioner.services.errors import PermanentExternalError
from provisioner.services.executor import PlanExecutor, RetryPolicy
from provisioner.services.graph import build_graph
from provisioner.services.planner import Planner
from provisioner.services.reporting import format_failure_report, format_plan, format_result
from provisioner.services.utils import REDACTED


def test_plan_report_lists_changes_and_order():
    snapshot = {"vpc": ObservedResource(id="vpc", type="aws.vpc", external_id="vpc-1",
                                        attributes={"cidr_block": "10.0.0.0/16"}, outputs={"id": "vpc-1"})}
    declarations = [
        Declaration(id="vpc", type="aws.vpc", attributes={"cidr_block": "10.1.0.0/16"}),
        Declaration(id="app", type="example.app", attributes={"token": "abc123abc123", "vpc": "${vpc.id}"}),
    ]
    plan = Planner().plan_apply("labs", "dev", declarations, build_graph(declarations), snapshot)

    text = format_plan(plan)

    assert "1 to create, 0 to update, 1 to replace, 0 to destroy, 0 unchanged" in text
    assert "-/+ vpc (aws.vpc)" in text
    assert 'cidr_block: "10.0.0.0/16" -> "10.1.0.0/16"  # forces replacement' in text
    assert f"token: (absent) -> {REDACTED}" in text
    assert "abc123abc123" not in text
    assert "vpc: (absent) -> (known after apply)" in text
    assert text.index("delete:vpc") < text.index("create:vpc") < text.index("create:app")


def test_no_changes():
    plan = Planner().plan_apply("labs", "dev", [], build_graph([]), {})
    assert "No changes" in format_plan(plan)


def test_failure_report_shows_the_causal_chain():
    graph = {"create:a": [], "create:b": ["create:a"], "create:c": ["create:b"], "create:x": []}

    def runner(key):
        if key == "create:a":
            raise PermanentExternalError("InvalidParameterValue")

    result = PlanExecutor(retry=RetryPolicy(max_attempts=1)).run(graph, runner)
    lines = format_failure_report(result).splitlines()

    assert lines[0] == "Apply failed: 1 failed, 2 skipped, 0 cancelled."
    assert lines[1] == "FAILED    create:a: PermanentExternalError: InvalidParameterValue"
    assert lines[2] == "  SKIPPED   create:b: blocked by create:a"
    assert lines[3] == "    SKIPPED   create:c: blocked by create:b <- create:a"
    assert format_result(result) == format_failure_report(result)


def test_success_summary():
    result = PlanExecutor().run({"a": [], "b": ["a"]}, lambda key: None)
    assert format_result(result) == "Apply complete: 2 step(s) succeeded."
