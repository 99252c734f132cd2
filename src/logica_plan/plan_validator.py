"""Structural validation and acyclicity proof for plans.

PlanValidator checks the ``logica_rb.plan.v1`` wire format field by field and
raises PlanValidationError on the first defect, naming the offending path
(``config[3].action.engine``, ``iterations.G.repetitions`` ...). A
structurally valid plan is then checked for cycles on its collapsed unit
graph (see ``logica_plan.graph``); a cycle raises PlanCycleError listing
every unit that could not be ordered.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from logica_plan.errors import PlanValidationError
from logica_plan.graph import collapse_unit_graph, toposort_units
from logica_plan.plan import PLAN_SCHEMA, SUPPORTED_ENGINES, Launcher, NodeType, Plan

logger = logging.getLogger(__name__)

SUPPORTED_NODE_TYPES: tuple[str, ...] = tuple(t.value for t in NodeType)
SUPPORTED_LAUNCHERS: tuple[str, ...] = tuple(launcher.value for launcher in Launcher)
SUPPORTED_OUTPUT_KINDS: tuple[str, ...] = ("table",)

OUTPUT_KEYS = frozenset({"predicate", "node", "kind"})


def _is_non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _choices(values: tuple[str, ...]) -> str:
    return "[" + ", ".join(f'"{v}"' for v in values) + "]"


class PlanValidator:
    """Validates plans before they are executed."""

    @classmethod
    def validate(cls, plan: Plan | Mapping[str, Any]) -> bool:
        """Validate a plan or its wire-format dictionary.

        Returns:
            True when the plan is valid.

        Raises:
            PlanValidationError: On the first structural defect.
            PlanCycleError: If the collapsed unit graph has a cycle.
        """
        data = plan.to_dict() if isinstance(plan, Plan) else plan
        if not isinstance(data, Mapping):
            raise PlanValidationError("plan must be an object")

        if data.get("schema") != PLAN_SCHEMA:
            raise PlanValidationError(f'schema must be "{PLAN_SCHEMA}"')

        if data.get("engine") not in SUPPORTED_ENGINES:
            raise PlanValidationError(f"engine must be one of {_choices(SUPPORTED_ENGINES)}")

        final_predicates = cls._non_empty_strings(data, "final_predicates")
        outputs = cls._validate_outputs(data.get("outputs"), final_predicates)
        cls._strings(data, "preambles")
        cls._validate_edges(data.get("dependency_edges"), "dependency_edges")
        cls._validate_edges(data.get("data_dependency_edges"), "data_dependency_edges")

        iterations = data.get("iterations")
        if not isinstance(iterations, Mapping):
            raise PlanValidationError("iterations must be an object")

        nodes_by_name = cls._validate_config(data.get("config"))

        for name, node in nodes_by_name.items():
            for dep in node["requires"]:
                if dep not in nodes_by_name:
                    raise PlanValidationError(
                        f"node {name} requires missing dependency: {dep}",
                        details={"node": name, "dependency": dep},
                    )

        for output in outputs:
            if output["node"] not in nodes_by_name:
                raise PlanValidationError(f"outputs references missing node: {output['node']}")

        members_by_group = cls._validate_iterations(iterations, nodes_by_name)

        units, unit_deps = collapse_unit_graph(
            {name: node["requires"] for name, node in nodes_by_name.items()},
            members_by_group,
        )
        toposort_units(units, unit_deps)

        logger.debug("Plan is valid: %d nodes, %d iteration groups", len(nodes_by_name), len(iterations))
        return True

    # -------------------------------------------------------------------------
    # Field checks
    # -------------------------------------------------------------------------

    @staticmethod
    def _strings(data: Mapping[str, Any], key: str) -> list[str]:
        value = data.get(key)
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise PlanValidationError(f"{key} must be an array of strings")
        return value

    @staticmethod
    def _non_empty_strings(data: Mapping[str, Any], key: str) -> list[str]:
        value = data.get(key)
        if not isinstance(value, list) or not all(_is_non_empty_string(v) for v in value):
            raise PlanValidationError(f"{key} must be an array of non-empty strings")
        return value

    @staticmethod
    def _validate_outputs(outputs: Any, final_predicates: list[str]) -> list[Mapping[str, Any]]:
        if not isinstance(outputs, list):
            raise PlanValidationError("outputs must be an array")
        if len(outputs) != len(final_predicates):
            raise PlanValidationError("outputs length must match final_predicates length")

        for idx, out in enumerate(outputs):
            path = f"outputs[{idx}]"
            if not isinstance(out, Mapping):
                raise PlanValidationError(f"{path} must be an object")
            if set(out) != OUTPUT_KEYS:
                raise PlanValidationError(f"{path} must have keys: predicate, node, kind")
            if not _is_non_empty_string(out["predicate"]):
                raise PlanValidationError(f"{path}.predicate must be a non-empty string")
            if out["predicate"] != final_predicates[idx]:
                raise PlanValidationError(f"{path}.predicate must equal final_predicates[{idx}]")
            if not _is_non_empty_string(out["node"]):
                raise PlanValidationError(f"{path}.node must be a non-empty string")
            if out["kind"] not in SUPPORTED_OUTPUT_KINDS:
                raise PlanValidationError(f"{path}.kind must be one of {_choices(SUPPORTED_OUTPUT_KINDS)}")
        return outputs

    @staticmethod
    def _validate_edges(edges: Any, label: str) -> None:
        if not isinstance(edges, list):
            raise PlanValidationError(f"{label} must be an array")
        for idx, edge in enumerate(edges):
            if not (
                isinstance(edge, (list, tuple))
                and len(edge) == 2
                and all(_is_non_empty_string(v) for v in edge)
            ):
                raise PlanValidationError(f"{label}[{idx}] must be [String, String]")

    @staticmethod
    def _validate_config(config: Any) -> dict[str, Mapping[str, Any]]:
        if not isinstance(config, list):
            raise PlanValidationError("config must be an array")

        nodes_by_name: dict[str, Mapping[str, Any]] = {}
        for idx, entry in enumerate(config):
            path = f"config[{idx}]"
            if not isinstance(entry, Mapping):
                raise PlanValidationError(f"{path} must be an object")

            name = entry.get("name")
            if not _is_non_empty_string(name):
                raise PlanValidationError(f"{path}.name must be a non-empty string")
            if name in nodes_by_name:
                raise PlanValidationError(f"config.name must be unique: {name}")

            node_type = entry.get("type")
            if node_type not in SUPPORTED_NODE_TYPES:
                raise PlanValidationError(f"{path}.type must be one of {_choices(SUPPORTED_NODE_TYPES)}")

            requires = entry.get("requires")
            if not isinstance(requires, list) or not all(_is_non_empty_string(r) for r in requires):
                raise PlanValidationError(f"{path}.requires must be an array of non-empty strings")

            action = entry.get("action")
            if not isinstance(action, Mapping):
                raise PlanValidationError(f"{path}.action must be an object")

            predicate = action.get("predicate")
            if not _is_non_empty_string(predicate):
                raise PlanValidationError(f"{path}.action.predicate must be a non-empty string")
            if predicate != name:
                raise PlanValidationError(f"{path}.action.predicate must equal {path}.name")

            launcher = action.get("launcher")
            if launcher not in SUPPORTED_LAUNCHERS:
                raise PlanValidationError(f"{path}.action.launcher must be one of {_choices(SUPPORTED_LAUNCHERS)}")

            is_data_launcher = launcher == Launcher.NONE.value
            if is_data_launcher != (node_type == NodeType.DATA.value):
                raise PlanValidationError(f"{path}: launcher=none is required exactly for type=data")
            if is_data_launcher and requires:
                raise PlanValidationError(f"{path}.requires must be empty for data nodes")

            if launcher == Launcher.QUERY.value:
                if action.get("engine") not in SUPPORTED_ENGINES:
                    raise PlanValidationError(
                        f"{path}.action.engine must be one of {_choices(SUPPORTED_ENGINES)}"
                    )
                if not isinstance(action.get("sql"), str):
                    raise PlanValidationError(f"{path}.action.sql must be a string")

            nodes_by_name[name] = entry

        return nodes_by_name

    @staticmethod
    def _validate_iterations(
        iterations: Mapping[str, Any],
        nodes_by_name: Mapping[str, Mapping[str, Any]],
    ) -> dict[str, list[str]]:
        member_of: dict[str, str] = {}
        members_by_group: dict[str, list[str]] = {}

        for group, spec in iterations.items():
            path = f"iterations.{group}"
            if not isinstance(spec, Mapping):
                raise PlanValidationError(f"{path} must be an object")

            predicates = spec.get("predicates")
            if not isinstance(predicates, list) or not all(_is_non_empty_string(p) for p in predicates):
                raise PlanValidationError(f"{path}.predicates must be an array of non-empty strings")

            repetitions = spec.get("repetitions")
            if not _is_int(repetitions) or repetitions < 0:
                raise PlanValidationError(f"{path}.repetitions must be an integer >= 0")

            if not isinstance(spec.get("stop_signal"), str):
                raise PlanValidationError(f"{path}.stop_signal must be a string")

            for predicate in predicates:
                node = nodes_by_name.get(predicate)
                if node is None:
                    raise PlanValidationError(f"{path} references missing node: {predicate}")
                if node["action"].get("launcher") != Launcher.QUERY.value:
                    raise PlanValidationError(f"{path} node must have launcher=query: {predicate}")
                if predicate in member_of:
                    raise PlanValidationError(f"node appears in multiple iterations: {predicate}")
                member_of[predicate] = group

            members_by_group[group] = predicates

        return members_by_group
