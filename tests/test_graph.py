"""Tests for dependency graph validation."""

import pytest

from condos.graph import (
    DependencyCycleError,
    find_cycle,
    validate_goal_dependencies,
    validate_task_dependencies,
)


def test_find_cycle_none_for_dag():
    assert find_cycle({"a": [], "b": ["a"], "c": ["a", "b"]}) is None


def test_find_cycle_two_nodes():
    cycle = find_cycle({"a": ["b"], "b": ["a"]})
    assert cycle is not None
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b"}


def test_find_cycle_longer_loop_behind_a_dag_prefix():
    cycle = find_cycle({"root": ["x"], "x": ["y"], "y": ["z"], "z": ["x"]})
    assert cycle is not None
    assert set(cycle) == {"x", "y", "z"}
    assert "root" not in cycle


def test_find_cycle_ignores_unknown_nodes():
    assert find_cycle({"a": ["ghost"]}) is None


def test_validate_tasks_accepts_chain():
    validate_task_dependencies(
        [{"id": "t1"}, {"id": "t2", "depends_on": ["t1"]}, {"id": "t3", "depends_on": ["t2"]}]
    )


def test_validate_tasks_rejects_cycle():
    with pytest.raises(DependencyCycleError) as exc_info:
        validate_task_dependencies(
            [{"id": "t1", "depends_on": ["t2"]}, {"id": "t2", "depends_on": ["t1"]}]
        )
    assert "cycle" in str(exc_info.value)
    assert set(exc_info.value.cycle) == {"t1", "t2"}


def test_validate_tasks_rejects_self_dependency():
    with pytest.raises(DependencyCycleError, match="cannot depend on itself"):
        validate_task_dependencies([{"id": "t1", "depends_on": ["t1"]}])


def test_validate_goals_rejects_unknown_dependency():
    with pytest.raises(DependencyCycleError, match="unknown goal"):
        validate_goal_dependencies([{"id": "g1", "depends_on": ["g404"]}])


def test_cycle_error_is_a_value_error():
    assert issubclass(DependencyCycleError, ValueError)
