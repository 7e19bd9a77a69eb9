"""Tests for launch-time dependency graph validation."""

import pytest

from convergence.app.models.agent import AgentDescriptor
from convergence.errors import ConfigurationError
from convergence.orchestrator.dependency_graph import DependencyGraph


def _agent(name, deps=(), max_cycles=3):
    return AgentDescriptor(
        name=name, dependencies=list(deps), max_cycles=max_cycles, target_pass_rate=85
    )


def test_execution_levels():
    graph = DependencyGraph([
        _agent("schema"),
        _agent("auth"),
        _agent("api", deps=["schema", "auth"]),
        _agent("ui", deps=["api"]),
    ])

    assert graph.get_execution_order() == [["auth", "schema"], ["api"], ["ui"]]
    assert [d.name for d in graph.get_dependent_agents("schema")] == ["api"]


def test_critical_path_weighted_by_budget():
    graph = DependencyGraph([
        _agent("schema", max_cycles=5),
        _agent("auth", max_cycles=2),
        _agent("api", deps=["schema", "auth"], max_cycles=3),
    ])

    assert graph.get_critical_path() == (["schema", "api"], 8)


def test_cycle_is_rejected():
    graph = DependencyGraph([
        _agent("a", deps=["c"]),
        _agent("b", deps=["a"]),
        _agent("c", deps=["b"]),
    ])

    is_valid, cycle = graph.validate_acyclic()
    assert not is_valid
    assert cycle[0] == cycle[-1]
    with pytest.raises(ConfigurationError):
        graph.get_execution_order()


def test_unknown_dependency_is_rejected():
    graph = DependencyGraph([_agent("api", deps=["schema"])])

    assert graph.unknown_dependencies() == {"api": ["schema"]}
    with pytest.raises(ConfigurationError):
        graph.validate()


def test_duplicate_names_are_rejected():
    graph = DependencyGraph([_agent("api")])
    with pytest.raises(ConfigurationError):
        graph.add_node(_agent("api"))
