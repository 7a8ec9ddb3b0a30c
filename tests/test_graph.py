import pytest

from provisioner.models import Declaration
from provisioner.services.errors import CycleDetected, UnresolvedReference, ValidationError
from provisioner.services.graph import build_graph, declaration_references, graph_from_edges


def decl(id, references=(), type="example.thing", **attributes):
    return Declaration(id=id, type=type, references=list(references), attributes=attributes)


def test_order_respects_every_edge_of_the_lab_stack(lab_stack):
    graph = build_graph(lab_stack.declaration_list())
    position = {n: i for i, n in enumerate(graph.order)}

    assert sorted(graph.order) == sorted(lab_stack.declarations)
    for node, prereqs in graph.prerequisites.items():
        for p in prereqs:
            assert position[p] < position[node], f"{p} must come before {node}"


def test_chain_orders_network_compute_lb():
    graph = build_graph([
        decl("lb", ["compute"]),
        decl("compute", ["network"]),
        decl("network"),
    ])
    assert graph.order == ["network", "compute", "lb"]
    assert graph.reverse_order() == ["lb", "compute", "network"]


def test_independent_nodes_keep_declaration_order():
    graph = build_graph([decl("c"), decl("a"), decl("b")])
    assert graph.order == ["c", "a", "b"]


def test_interpolation_creates_implicit_edges():
    subnet = decl("subnet", vpc_id="${vpc.id}", tags={"Name": "in ${vpc.name}"})
    graph = build_graph([decl("vpc"), subnet])

    assert graph.prerequisites["subnet"] == ["vpc"]
    assert graph.dependents["vpc"] == ["subnet"]


def test_explicit_references_come_first():
    d = decl("x", ["z"], a="${b.id}", c=["${a.arn}"])
    assert declaration_references(d) == ["z", "a", "b"]


def test_two_node_cycle_is_reported_with_its_path():
    with pytest.raises(CycleDetected) as exc:
        build_graph([decl("a", ["b"]), decl("b", ["a"])])
    assert exc.value.cycle == ["a", "b", "a"]
    assert "a -> b -> a" in str(exc.value)


def test_cycle_through_interpolation():
    with pytest.raises(CycleDetected):
        build_graph([
            decl("a", x="${c.id}"),
            decl("b", x="${a.id}"),
            decl("c", x="${b.id}"),
        ])


def test_self_reference_is_a_cycle():
    with pytest.raises(CycleDetected) as exc:
        build_graph([decl("a", ["a"])])
    assert exc.value.cycle == ["a", "a"]


def test_cycle_is_a_validation_error():
    with pytest.raises(ValidationError):
        build_graph([decl("a", ["b"]), decl("b", ["a"])])


def test_unresolved_reference():
    with pytest.raises(UnresolvedReference) as exc:
        build_graph([decl("subnet", vpc_id="${vpc.id}")])
    assert exc.value.declaration_id == "subnet"
    assert exc.value.missing == "vpc"


def test_duplicate_ids_rejected():
    with pytest.raises(ValidationError) as exc:
        build_graph([decl("a"), decl("a")])
    assert "Duplicate" in exc.value.errors[0]


def test_closures_and_subgraph():
    graph = build_graph([
        decl("vpc"),
        decl("subnet", ["vpc"]),
        decl("instance", ["subnet"]),
        decl("bucket"),
    ])
    assert graph.closure_prerequisites(["instance"]) == {"instance", "subnet", "vpc"}
    assert graph.closure_dependents(["vpc"]) == {"vpc", "subnet", "instance"}

    sub = graph.subgraph({"subnet", "instance"})
    assert sub.order == ["subnet", "instance"]
    assert sub.prerequisites["subnet"] == []


def test_graph_from_edges_drops_dangling_edges():
    graph = graph_from_edges(["a", "b"], {"b": ["a", "gone", "a"]})
    assert graph.prerequisites == {"a": [], "b": ["a"]}
    assert graph.order == ["a", "b"]
