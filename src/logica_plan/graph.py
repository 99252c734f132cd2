"""Unit graph construction and topological ordering for plans.

Iteration groups are allowed to contain cycles between their members, so the
acyclicity check runs on a collapsed *unit* graph:
- every node outside an iteration group is its own unit
- every iteration group G is a single unit named ``iter:G``
- a dependency on a member of G becomes a dependency on ``iter:G``
- a group's dependencies are its members' requires, minus fellow members

The same collapse is used by the executor to schedule iteration groups.
"""

from __future__ import annotations

from collections import deque
from typing import Iterable, Mapping

from logica_plan.errors import PlanCycleError

ITERATION_UNIT_PREFIX = "iter:"


def iteration_unit(group: str) -> str:
    """Unit name for an iteration group."""
    return f"{ITERATION_UNIT_PREFIX}{group}"


def is_iteration_unit(unit: str) -> bool:
    return unit.startswith(ITERATION_UNIT_PREFIX)


def iteration_group_of(unit: str) -> str:
    return unit[len(ITERATION_UNIT_PREFIX):]


def build_membership(iterations: Mapping[str, Iterable[str]]) -> dict[str, str]:
    """Map each member predicate to the name of its iteration group."""
    membership: dict[str, str] = {}
    for group, members in iterations.items():
        for predicate in members:
            membership[predicate] = group
    return membership


def _unit_for(dep: str, membership: Mapping[str, str]) -> str:
    group = membership.get(dep)
    return iteration_unit(group) if group is not None else dep


def iteration_external_dependencies(
    members: Iterable[str],
    requires_by_name: Mapping[str, Iterable[str]],
    membership: Mapping[str, str],
) -> list[str]:
    """Dependencies of an iteration group on everything outside it.

    Args:
        members: Member predicates of the group
        requires_by_name: Node name -> direct predecessors
        membership: Output of build_membership()

    Returns:
        Sorted unit names; members of other groups appear as ``iter:<group>``.
    """
    members = list(members)
    member_set = set(members)

    deps: set[str] = set()
    for member in members:
        for dep in requires_by_name.get(member, ()):
            if dep in member_set:
                continue
            deps.add(_unit_for(dep, membership))
    return sorted(deps)


def collapse_unit_graph(
    requires_by_name: Mapping[str, Iterable[str]],
    iterations: Mapping[str, Iterable[str]],
) -> tuple[list[str], dict[str, set[str]]]:
    """Collapse a node graph into its unit graph.

    Args:
        requires_by_name: Node name -> direct predecessors, in config order
        iterations: Group name -> member predicates

    Returns:
        (units, unit_deps): units in a stable order (non-member nodes in
        input order, then groups in input order) and each unit's dependencies.
    """
    membership = build_membership(iterations)

    units: list[str] = [name for name in requires_by_name if name not in membership]
    units.extend(iteration_unit(group) for group in iterations)

    unit_deps: dict[str, set[str]] = {unit: set() for unit in units}
    for name, requires in requires_by_name.items():
        if name in membership:
            continue
        for dep in requires:
            unit_deps[name].add(_unit_for(dep, membership))

    for group, members in iterations.items():
        unit_deps[iteration_unit(group)].update(
            iteration_external_dependencies(members, requires_by_name, membership)
        )

    return units, unit_deps


def toposort_units(units: Iterable[str], unit_deps: Mapping[str, Iterable[str]]) -> list[str]:
    """Order units so that dependencies come first (Kahn's algorithm).

    Dependencies on names that are not units are ignored.

    Raises:
        PlanCycleError: With every unit that could not be ordered.
    """
    units = list(units)
    unit_set = set(units)

    in_degree: dict[str, int] = {unit: 0 for unit in units}
    dependents: dict[str, list[str]] = {unit: [] for unit in units}
    for unit in units:
        for dep in set(unit_deps.get(unit, ())):
            if dep in unit_set:
                in_degree[unit] += 1
                dependents[dep].append(unit)

    queue = deque(unit for unit in units if in_degree[unit] == 0)
    order: list[str] = []

    while queue:
        current = queue.popleft()
        order.append(current)
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(order) != len(units):
        raise PlanCycleError([unit for unit in units if in_degree[unit] > 0])

    return order
