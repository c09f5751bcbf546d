from __future__ import annotations

import pytest

from stageflow.dag import build_graph
from stageflow.errors import CycleError, DuplicateStageError, UnknownDependencyError
from stageflow.model import Command, Stage


def s(id, *needs):
    return Stage(id=id, needs=tuple(needs), command=Command(argv=(id,)))


def test_cycle_is_rejected():
    with pytest.raises(CycleError) as exc:
        build_graph([s("a", "c"), s("b", "a"), s("c", "b"), s("free")])
    assert sorted(exc.value.stages) == ["a", "b", "c"]


def test_unknown_dependency_is_rejected():
    with pytest.raises(UnknownDependencyError) as exc:
        build_graph([s("build"), s("deploy", "buld")])
    assert exc.value.stage == "deploy"
    assert exc.value.missing == "buld"


def test_duplicate_ids_are_rejected():
    with pytest.raises(DuplicateStageError):
        build_graph([s("a"), s("a")])


def test_ready_respects_needs_and_declaration_order():
    g = build_graph([s("lint"), s("test-b"), s("test-a"), s("build", "test-a", "test-b")])

    assert g.ready(completed=[]) == ["lint", "test-b", "test-a"]
    assert g.ready(completed=["test-a"], started=["lint", "test-b", "test-a"]) == []
    assert g.ready(completed=["test-a", "test-b"], started=["lint", "test-a", "test-b"]) == ["build"]


def test_ready_excludes_descendants_of_failed():
    g = build_graph([s("a"), s("b", "a"), s("c", "b"), s("d")])
    assert g.ready(completed=[], failed=["a"], started=["a"]) == ["d"]
    assert g.descendants("a") == ["b", "c"]


def test_waves():
    g = build_graph([
        s("test-backend"),
        s("test-frontend"),
        s("build", "test-backend", "test-frontend"),
        s("deploy-staging", "build"),
        s("deploy-production", "deploy-staging"),
    ])
    assert g.waves() == [
        ["test-backend", "test-frontend"],
        ["build"],
        ["deploy-staging"],
        ["deploy-production"],
    ]


def test_repeated_need_counts_once():
    g = build_graph([s("a"), s("b", "a", "a")])
    assert g.needs["b"] == ("a",)
    assert g.waves() == [["a"], ["b"]]
