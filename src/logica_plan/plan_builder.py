"""Merges compiled executions into one Plan.

Each execution is compiled independently for its own main predicate, so the
same predicate may be exported by several executions. When an execution
exports a predicate that is a requested final predicate of *another*
execution, that copy is renamed to ``down_<P>`` so that both survive in the
merged plan.

Example:
    >>> from logica_plan import CompiledExecution, PlanBuilder
    >>>
    >>> execution = CompiledExecution(
    ...     main_predicate="Total",
    ...     table_to_export_map={"Total": "CREATE TABLE Total AS SELECT sum(x) AS s FROM Input;"},
    ...     data_dependency_edges={("Input", "Total")},
    ... )
    >>> plan = PlanBuilder.from_executions([execution], engine="sqlite")
    >>> [node.name for node in plan.config]
    ['Input', 'Total']
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Sequence

from logica_plan.errors import PlanValidationError
from logica_plan.execution import Execution
from logica_plan.plan import (
    PLAN_SCHEMA,
    Edge,
    IterationSpec,
    Launcher,
    NodeType,
    Plan,
    PlanAction,
    PlanNode,
    PlanOutput,
    node_sort_key,
    sort_edges,
)

logger = logging.getLogger(__name__)

RENAMED_PREFIX = "down_"


def normalize_predicates(predicates: Iterable[Any] | str | None) -> list[str]:
    """Drop empty entries and duplicates, keeping first-seen order."""
    if predicates is None:
        return []
    if isinstance(predicates, str):
        predicates = [predicates]

    result: list[str] = []
    for p in predicates:
        if p is None:
            continue
        text = str(p)
        if text and text not in result:
            result.append(text)
    return result


def rename_predicate(
    export_map: Mapping[str, str],
    dependency_edges: set[Edge],
    data_dependency_edges: set[Edge],
    from_name: str,
    to_name: str,
) -> tuple[dict[str, str], set[Edge], set[Edge]]:
    """Rename a predicate in an export map and both edge sets."""

    def rename(name: str) -> str:
        return to_name if name == from_name else name

    new_map = {rename(k): v for k, v in export_map.items()}
    new_deps = {(rename(a), rename(b)) for a, b in dependency_edges}
    new_data_deps = {(rename(a), rename(b)) for a, b in data_dependency_edges}
    return new_map, new_deps, new_data_deps


class PlanBuilder:
    """Builds a Plan from compiled executions."""

    @classmethod
    def from_executions(
        cls,
        executions: Sequence[Execution],
        engine: str,
        final_predicates: Iterable[str] | str | None = None,
    ) -> Plan:
        """Merge executions into a single plan.

        Args:
            executions: Compiled executions, one per main predicate
            engine: Engine every query node runs on ("sqlite" or "psql")
            final_predicates: Requested outputs; defaults to every main predicate

        Returns:
            The merged Plan.

        Raises:
            PlanValidationError: If a final predicate has no node, or two
                executions define the same iteration group differently.
        """
        if final_predicates is None:
            final_predicates = [e.main_predicate for e in executions]
        finals = normalize_predicates(final_predicates)

        export_map: dict[str, str] = {}
        dependency_edges: set[Edge] = set()
        data_dependency_edges: set[Edge] = set()
        iterations: dict[str, IterationSpec] = {}
        preambles: list[str] = []

        for execution in executions:
            cls._merge_iterations(iterations, execution.iterations or {})

            p_map = dict(execution.table_to_export_map)
            p_deps = {(str(a), str(b)) for a, b in execution.dependency_edges}
            p_data_deps = {(str(a), str(b)) for a, b in execution.data_dependency_edges}

            for predicate in finals:
                if predicate == execution.main_predicate or predicate not in p_map:
                    continue
                renamed = f"{RENAMED_PREFIX}{predicate}"
                logger.debug(
                    "Renaming %s to %s in execution for %s",
                    predicate, renamed, execution.main_predicate,
                )
                p_map, p_deps, p_data_deps = rename_predicate(
                    p_map, p_deps, p_data_deps, predicate, renamed
                )

            prefix = execution.predicate_specific_preamble(execution.main_predicate) or ""
            for predicate, sql in p_map.items():
                export_map[predicate] = prefix + sql

            dependency_edges |= p_deps
            data_dependency_edges |= p_data_deps

            preamble = execution.preamble or ""
            if preamble.strip() and preamble not in preambles:
                preambles.append(preamble)

        node_names = cls._node_names(export_map, dependency_edges, data_dependency_edges)
        outputs = cls._build_outputs(finals, node_names)
        final_nodes = {output.node for output in outputs}

        config = cls._build_config(
            export_map, dependency_edges, data_dependency_edges, final_nodes, engine
        )

        logger.info(
            "Built plan with %d nodes, %d outputs and %d iteration groups",
            len(config), len(outputs), len(iterations),
        )

        return Plan(
            schema=PLAN_SCHEMA,
            engine=engine,
            final_predicates=tuple(finals),
            outputs=tuple(outputs),
            preambles=tuple(preambles),
            dependency_edges=sort_edges(dependency_edges),
            data_dependency_edges=sort_edges(data_dependency_edges),
            iterations=iterations,
            config=tuple(config),
        )

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    @staticmethod
    def _merge_iterations(merged: dict[str, IterationSpec], incoming: Mapping[str, Any]) -> None:
        for name, spec in incoming.items():
            spec = IterationSpec.from_dict(spec)
            existing = merged.get(name)
            if existing is not None and existing != spec:
                raise PlanValidationError(
                    f"iteration group defined differently by two executions: {name}",
                    details={"iteration": name},
                )
            merged[name] = spec

    @staticmethod
    def _data_nodes(
        export_map: Mapping[str, str],
        dependency_edges: set[Edge],
        data_dependency_edges: set[Edge],
    ) -> set[str]:
        data = {source for source, _ in data_dependency_edges}
        data |= {source for source, _ in dependency_edges if source not in export_map}
        return data - set(export_map)

    @classmethod
    def _node_names(
        cls,
        export_map: Mapping[str, str],
        dependency_edges: set[Edge],
        data_dependency_edges: set[Edge],
    ) -> set[str]:
        return cls._data_nodes(export_map, dependency_edges, data_dependency_edges) | set(export_map)

    @staticmethod
    def _build_outputs(finals: list[str], node_names: set[str]) -> list[PlanOutput]:
        outputs = []
        for predicate in finals:
            renamed = f"{RENAMED_PREFIX}{predicate}"
            if predicate in node_names:
                node = predicate
            elif renamed in node_names:
                node = renamed
            else:
                raise PlanValidationError(
                    f"output predicate is missing from plan: {predicate}",
                    details={"predicate": predicate},
                )
            outputs.append(PlanOutput(predicate=predicate, node=node))
        return outputs

    @classmethod
    def _build_config(
        cls,
        export_map: Mapping[str, str],
        dependency_edges: set[Edge],
        data_dependency_edges: set[Edge],
        final_nodes: set[str],
        engine: str,
    ) -> list[PlanNode]:
        depends_on: dict[str, set[str]] = {}
        for source, target in dependency_edges | data_dependency_edges:
            depends_on.setdefault(target, set()).add(source)

        nodes = [
            PlanNode(
                name=predicate,
                type=NodeType.DATA,
                requires=(),
                action=PlanAction(predicate=predicate, launcher=Launcher.NONE),
            )
            for predicate in cls._data_nodes(export_map, dependency_edges, data_dependency_edges)
        ]

        for predicate, sql in export_map.items():
            nodes.append(
                PlanNode(
                    name=predicate,
                    type=NodeType.FINAL if predicate in final_nodes else NodeType.INTERMEDIATE,
                    requires=tuple(sorted(depends_on.get(predicate, ()))),
                    action=PlanAction(
                        predicate=predicate,
                        launcher=Launcher.QUERY,
                        engine=engine,
                        sql=sql,
                    ),
                )
            )

        return sorted(nodes, key=node_sort_key)
