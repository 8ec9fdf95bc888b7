import pytest

from common.waterfall_engine.errors import (
    CatalogError,
    CycleError,
    DanglingReferenceError,
    DuplicateBranchError,
    GraphError,
)
from common.waterfall_engine.graph import RuleFlowGraph
from common.waterfall_engine.models import FlowCondition, RuleLevel, RuleSubtype


def test_next_rule_follows_the_outcome(make_rule, make_edge):
    a, b, c = make_rule("A"), make_rule("B"), make_rule("C")
    graph = RuleFlowGraph.build([a, b, c], [make_edge("A", "B", "Yes"), make_edge("A", "C", "No")])

    assert graph.next_rule(a, True).name == "B"
    assert graph.next_rule(a, False).name == "C"
    assert graph.next_rule(b, True) is None
    assert graph.children("A") == ["B", "C"]


def test_pass_and_fail_edges_share_outcome_keys(make_rule, make_edge):
    a, b, c = make_rule("A"), make_rule("B"), make_rule("C")
    graph = RuleFlowGraph.build([a, b, c], [make_edge("A", "B", "Pass"), make_edge("A", "C", "Fail")])

    assert graph.next_rule(a, True).name == "B"
    assert graph.next_rule(a, False).name == "C"
    assert graph.condition_for(a, True) == FlowCondition.PASS
    # Leaves fall back to the rule type's own vocabulary.
    assert graph.condition_for(b, False) == FlowCondition.NO


def test_two_active_edges_for_same_outcome_rejected(make_rule, make_edge):
    rules = [make_rule("A"), make_rule("B"), make_rule("C")]
    with pytest.raises(DuplicateBranchError) as exc:
        RuleFlowGraph.build(rules, [make_edge("A", "B", "Yes"), make_edge("A", "C", "Yes")])
    assert exc.value.parent == "A"
    assert set(exc.value.children) == {"B", "C"}


def test_yes_and_pass_from_same_parent_is_a_duplicate_branch(make_rule, make_edge):
    rules = [make_rule("A"), make_rule("B"), make_rule("C")]
    with pytest.raises(DuplicateBranchError):
        RuleFlowGraph.build(rules, [make_edge("A", "B", "Yes"), make_edge("A", "C", "Pass")])


def test_inactive_edges_are_ignored(make_rule, make_edge):
    a, b, c = make_rule("A"), make_rule("B"), make_rule("C")
    graph = RuleFlowGraph.build(
        [a, b, c],
        [make_edge("A", "B", "Yes"), make_edge("A", "C", "Yes", active=False)],
    )
    assert graph.next_rule(a, True).name == "B"
    assert len(graph.edges) == 1


def test_edge_to_unknown_rule_is_dangling(make_rule, make_edge):
    with pytest.raises(DanglingReferenceError) as exc:
        RuleFlowGraph.build([make_rule("A")], [make_edge("A", "Ghost")])
    assert exc.value.missing == "Ghost"


def test_edge_to_inactive_rule_is_dangling(make_rule, make_edge):
    rules = [make_rule("A"), make_rule("B", active=False)]
    with pytest.raises(DanglingReferenceError) as exc:
        RuleFlowGraph.build(rules, [make_edge("A", "B", "No")])
    assert exc.value.missing == "B"


def test_cycle_within_a_subtype_rejected(make_rule, make_edge):
    rules = [make_rule("A"), make_rule("B"), make_rule("C")]
    edges = [make_edge("A", "B"), make_edge("B", "C"), make_edge("C", "A", "No")]
    with pytest.raises(CycleError) as exc:
        RuleFlowGraph.build(rules, edges)
    path = exc.value.path
    assert path[0] == path[-1]
    assert set(path) == {"A", "B", "C"}


def test_edge_into_gate_rule_is_not_followed_by_cycle_check(make_rule, make_edge):
    rules = [make_rule("A"), make_rule("Gate", is_root=True)]
    graph = RuleFlowGraph.build(rules, [make_edge("A", "Gate"), make_edge("Gate", "A")])
    assert graph.next_rule(rules[1], True).name == "A"


def test_cross_subtype_edges_are_not_followed_by_cycle_check(make_rule, make_edge):
    rules = [make_rule("A", subtype="Initial"), make_rule("B", subtype="Final")]
    RuleFlowGraph.build(rules, [make_edge("A", "B"), make_edge("B", "A")])


def test_graph_errors_block_the_catalog():
    for error in (DuplicateBranchError, DanglingReferenceError, CycleError):
        assert issubclass(error, GraphError)
    assert issubclass(GraphError, CatalogError)


def test_roots_are_scoped_and_ordered(make_rule, make_edge):
    rules = [
        make_rule("I1", subtype="Initial", execution_order=1),
        make_rule("I2", subtype="Initial", execution_order=2),
        make_rule("L1", level="Loan", execution_order=3),
        make_rule("F1", execution_order=5),
        make_rule("F0", execution_order=1),
        make_rule("Gate", execution_order=3, is_root=True),
        make_rule("Leaf", execution_order=9),
    ]
    edges = [make_edge("I1", "I2"), make_edge("F1", "Gate"), make_edge("F0", "Leaf")]
    graph = RuleFlowGraph.build(rules, edges)

    assert [r.name for r in graph.roots_for(RuleSubtype.FINAL, RuleLevel.DOCUMENT)] == ["F0", "Gate", "F1"]
    assert [r.name for r in graph.roots_for(RuleSubtype.INITIAL, RuleLevel.DOCUMENT)] == ["I1"]
    assert [r.name for r in graph.roots_for(RuleSubtype.FINAL, RuleLevel.LOAN)] == ["L1"]
    assert graph.roots_for(RuleSubtype.PCCD, RuleLevel.DOCUMENT) == []


def test_yaml_catalog_graph_roots(cd_catalog):
    graph = cd_catalog.graph
    assert [r.name for r in graph.roots_for(RuleSubtype.FINAL, RuleLevel.DOCUMENT)] == [
        "FinalCDIssuedByConsummationBit"
    ]
    assert [r.name for r in graph.roots_for(RuleSubtype.FINAL, RuleLevel.LOAN)] == ["LoanAmountMatchesNoteBit"]
    assert [r.name for r in graph.roots_for(RuleSubtype.PCCD, RuleLevel.DOCUMENT)] == ["PCCDChangeReasonBit"]
