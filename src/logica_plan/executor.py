"""Reference executor for validated plans.

The executor is a small scheduler. After running the plan's preambles it
repeats scheduling passes:

1. Run every pending query node outside iteration groups whose requirements
   are satisfied, in config order.
2. If nothing ran, run pending iteration groups (sorted by name) whose
   external dependencies are satisfied.

A pass that makes no progress while work remains is a deadlock.

An iteration group runs its members in listed order for up to ``repetitions``
rounds. When the group has a stop signal file, the file is deleted before each
round and the group stops early once a round leaves it non-empty.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Iterable, Mapping

from logica_plan.adapters import DatabaseAdapter, QueryResult, strip_trailing_semicolon
from logica_plan.errors import PlanExecutionError
from logica_plan.graph import (
    build_membership,
    is_iteration_unit,
    iteration_external_dependencies,
    iteration_group_of,
)
from logica_plan.guard import GuardReport, SqlGuard
from logica_plan.plan import IterationSpec, Launcher, Plan, PlanNode
from logica_plan.plan_validator import PlanValidator

logger = logging.getLogger(__name__)

MAX_PER_PAGE = 200

_QUERY_HEAD = re.compile(r"\A(?:WITH|SELECT)\b", re.IGNORECASE)


def _stop_signal_triggered(path: str) -> bool:
    if not path:
        return False
    try:
        return Path(path).stat().st_size > 0
    except FileNotFoundError:
        return False


def _reset_stop_signal(path: str) -> None:
    Path(path).unlink(missing_ok=True)


class ReferencePlanExecutor:
    """Runs a plan against a database adapter.

    Args:
        guard: Optional SqlGuard checked before each guarded node runs
        guarded_predicates: Node names to guard; None guards every query node
        validate: Validate the plan before running it

    Example:
        >>> with SQLiteAdapter() as adapter:
        ...     ReferencePlanExecutor().execute(adapter, plan)
    """

    def __init__(
        self,
        guard: SqlGuard | None = None,
        guarded_predicates: Iterable[str] | None = None,
        validate: bool = True,
    ) -> None:
        self.guard = guard
        self.guarded_predicates = None if guarded_predicates is None else frozenset(guarded_predicates)
        self.validate = validate
        self.reports: dict[str, GuardReport] = {}

    def execute(self, adapter: DatabaseAdapter, plan: Plan | Mapping[str, Any]) -> bool:
        """Execute every node of a plan.

        Raises:
            PlanValidationError: If validation is enabled and the plan is invalid
            PlanExecutionError: If scheduling deadlocks
            Violation: If a guarded node breaks the guard's policy

        Adapter errors propagate unchanged.
        """
        plan = self._coerce_plan(plan)
        logger.info("Executing plan (%s) with %d nodes", plan.engine, len(plan.config))

        for preamble in plan.preambles:
            if preamble.strip():
                adapter.exec_script(preamble)

        nodes_by_name = plan.nodes_by_name
        members = {group: spec.predicates for group, spec in plan.iterations.items()}
        membership = build_membership(members)
        requires_by_name = {node.name: node.requires for node in plan.config}
        external_deps = {
            group: iteration_external_dependencies(predicates, requires_by_name, membership)
            for group, predicates in members.items()
        }

        done_nodes = {node.name for node in plan.config if node.is_data}
        done_iters: set[str] = set()

        def satisfied(dep: str) -> bool:
            if is_iteration_unit(dep):
                return iteration_group_of(dep) in done_iters
            if nodes_by_name[dep].is_data:
                return True
            if dep in membership:
                return membership[dep] in done_iters
            return dep in done_nodes

        while True:
            progressed = False

            for node in plan.config:
                if node.name in done_nodes or node.name in membership:
                    continue
                if not all(satisfied(dep) for dep in node.requires):
                    continue
                self._run_node(adapter, node)
                done_nodes.add(node.name)
                progressed = True

            if progressed:
                continue

            for group in sorted(plan.iterations):
                if group in done_iters:
                    continue
                if not all(satisfied(dep) for dep in external_deps[group]):
                    continue
                self.run_iteration_group(adapter, group, plan.iterations[group], nodes_by_name)
                done_iters.add(group)
                progressed = True

            if progressed:
                continue

            pending_nodes = sorted(
                node.name for node in plan.config
                if node.name not in done_nodes and node.name not in membership
            )
            pending_iters = sorted(set(plan.iterations) - done_iters)
            if not pending_nodes and not pending_iters:
                break

            raise PlanExecutionError(
                "Plan execution deadlock/cycle: no ready nodes or iteration groups",
                details={"pending_nodes": pending_nodes, "pending_iterations": pending_iters},
            )

        logger.info("Plan executed: %d nodes, %d iteration groups", len(done_nodes), len(done_iters))
        return True

    def run_iteration_group(
        self,
        adapter: DatabaseAdapter,
        group: str,
        spec: IterationSpec,
        nodes_by_name: Mapping[str, PlanNode],
    ) -> int:
        """Run an iteration group to convergence or its repetition budget.

        Returns:
            Number of rounds executed.
        """
        rounds = 0
        for _ in range(spec.repetitions):
            if spec.stop_signal:
                _reset_stop_signal(spec.stop_signal)

            for predicate in spec.predicates:
                self._run_node(adapter, nodes_by_name[predicate])
            rounds += 1

            if _stop_signal_triggered(spec.stop_signal):
                logger.debug("Iteration %s converged after %d rounds", group, rounds)
                break

        logger.debug("Iteration %s ran %d of %d rounds", group, rounds, spec.repetitions)
        return rounds

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _coerce_plan(self, plan: Plan | Mapping[str, Any]) -> Plan:
        if isinstance(plan, Plan):
            if self.validate:
                PlanValidator.validate(plan)
            return plan
        return Plan.from_dict(plan, validate=self.validate)

    def _is_guarded(self, name: str) -> bool:
        if self.guard is None:
            return False
        return self.guarded_predicates is None or name in self.guarded_predicates

    def _run_node(self, adapter: DatabaseAdapter, node: PlanNode) -> None:
        if node.launcher != Launcher.QUERY:
            return

        sql = node.sql or ""
        if self._is_guarded(node.name):
            self.reports[node.name] = self.guard.check(sql, engine=node.action.engine, query_only=False)

        logger.debug("Running node %s", node.name)
        adapter.exec_script(sql)


def _paginate(query: str, page: int, per_page: int) -> str:
    offset = (page - 1) * per_page
    return f"SELECT * FROM ({query}) AS logica_rows LIMIT {int(per_page)} OFFSET {int(offset)}"


def fetch_outputs(
    adapter: DatabaseAdapter,
    plan: Plan,
    page: int | None = None,
    per_page: int | None = None,
) -> dict[str, QueryResult | None]:
    """Collect the plan's outputs after execution.

    Output nodes whose SQL is a query (SELECT/WITH) are fetched with
    select_all, optionally paginated; any other SQL is executed and maps to
    None.

    Args:
        adapter: Adapter the plan was executed with
        plan: The executed plan
        page: 1-based page number (values below 1 mean 1)
        per_page: Rows per page, capped at MAX_PER_PAGE; None disables paging

    Returns:
        Final predicate -> result.
    """
    page = max(int(page or 1), 1)
    if per_page is not None:
        per_page = min(max(int(per_page), 1), MAX_PER_PAGE)

    nodes_by_name = plan.nodes_by_name
    results: dict[str, QueryResult | None] = {}
    for output in plan.outputs:
        node = nodes_by_name.get(output.node)
        if node is None:
            raise PlanExecutionError(f"missing output node in config: {output.node}")

        query = (node.sql or "").strip()
        if _QUERY_HEAD.match(query):
            query = strip_trailing_semicolon(query)
            if per_page is not None:
                query = _paginate(query, page, per_page)
            results[output.predicate] = adapter.select_all(query)
        else:
            adapter.exec_script(query)
            results[output.predicate] = None
    return results
