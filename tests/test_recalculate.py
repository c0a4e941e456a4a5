"""Tests for whole-sheet recalculation and the dependency graph."""

from pacurhoja.formula import DependencyGraph, evaluate, recalculate
from pacurhoja.models import CellResult, FormatTag, ResultKind


SHEET = {
    "A1": "5",
    "A2": "text",
    "A3": "=SUMA(A1:A2)",
    "B1": "=A3*2",
    "B2": "=B1/0",
    "B3": "=B2+1",
    "C1": "=C2",
    "C2": "=C1",
    "C3": "=AVERAGE(A1:B1)",
}


def test_eager_matches_lazy() -> None:
    formats = {"C3": FormatTag.CURRENCY}
    results = recalculate(SHEET, formats)
    assert set(results) == set(SHEET)
    for address in SHEET:
        assert results[address] == evaluate(SHEET, address, formats)
        assert results[address] == evaluate(SHEET, address, formats, memoize=False)


def test_eager_results() -> None:
    results = recalculate(SHEET)
    assert results["A3"].display == "5"
    assert results["B1"].display == "10"
    assert results["B2"].kind == ResultKind.MATH_ERROR
    assert results["B3"].display == "1"
    assert results["C1"].kind == ResultKind.CIRCULAR
    assert results["C2"].kind == ResultKind.CIRCULAR
    assert results["C3"].display == "7.5"


def test_empty_cells_are_skipped() -> None:
    assert recalculate({"A1": "", "A2": "1"}) == {"A2": CellResult.value("1", 1.0)}


def test_targeted_recalculation_matches_full() -> None:
    before = {"A1": "1", "A2": "=A1*2", "B1": "=SUM(A1:A2)", "C1": "x"}
    previous = recalculate(before)
    after = dict(before, A1="5")
    targeted = recalculate(after, changed={"A1"}, previous=previous)
    assert targeted == recalculate(after)
    assert targeted["B1"].display == "15"


def test_targeted_recalculation_reuses_untouched_cells() -> None:
    cells = {"A1": "1", "A2": "=A1+1", "C1": "=7"}
    previous = recalculate(cells)
    previous["C1"] = CellResult.value("stale")
    results = recalculate(dict(cells, A1="2"), changed={"A1"}, previous=previous)
    assert results["A2"].display == "3"
    assert results["C1"].display == "stale"


def test_targeted_recalculation_handles_new_and_cleared_cells() -> None:
    cells = {"A1": "1", "A2": "=A1+B1"}
    previous = recalculate(cells)
    edited = {"A2": "=A1+B1", "B1": "4"}
    results = recalculate(edited, changed={"A1", "B1"}, previous=previous)
    assert results == recalculate(edited)
    assert "A1" not in results
    assert results["A2"].display == "4"


def test_dependency_graph() -> None:
    graph = DependencyGraph({"B1": "=A1+1", "C1": "=SUM(B1:B2)", "D1": "=C1", "E1": "=7"})
    assert graph.forward["C1"] == {"B1", "B2"}
    assert graph.affected({"A1"}) == {"B1", "C1", "D1"}
    assert graph.affected({"E1"}) == set()
    assert graph.precedents("D1") == {"C1", "B1"}
    order = graph.topo_order(["D1", "C1", "B1"])
    assert order.index("B1") < order.index("C1") < order.index("D1")


def test_topo_order_appends_cycles() -> None:
    graph = DependencyGraph({"A1": "=B1", "B1": "=A1", "C1": "=1"})
    order = graph.topo_order(graph.forward)
    assert order[0] == "C1"
    assert set(order[1:]) == {"A1", "B1"}
