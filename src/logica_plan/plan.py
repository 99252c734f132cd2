"""Plan data model and its JSON wire format.

A Plan is the merged, dependency-ordered execution plan for a set of compiled
predicates:
- PlanNode: one predicate; either a data node (launcher "none") or a query node
- PlanAction: how a node is produced (launcher, engine, SQL)
- IterationSpec: a bounded fixpoint group of mutually recursive predicates
- PlanOutput: which node holds each requested final predicate

Plans are immutable. ``Plan.to_dict()`` produces the ``logica_rb.plan.v1`` wire
format exactly; ``Plan.from_dict()`` validates before constructing.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from logica_plan.errors import PlanValidationError

PLAN_SCHEMA = "logica_rb.plan.v1"

SUPPORTED_ENGINES: tuple[str, ...] = ("sqlite", "psql")


class NodeType(str, Enum):
    DATA = "data"
    INTERMEDIATE = "intermediate"
    FINAL = "final"


class Launcher(str, Enum):
    NONE = "none"
    QUERY = "query"


# Unknown types sort after every known one.
TYPE_ORDER: dict[str, int] = {
    NodeType.DATA.value: 0,
    NodeType.INTERMEDIATE.value: 1,
    NodeType.FINAL.value: 2,
}
UNKNOWN_TYPE_ORDER = 9

Edge = tuple[str, str]


def sort_edges(edges: Iterable[Iterable[str]]) -> tuple[Edge, ...]:
    """Deduplicate edges and sort them by (source, target)."""
    unique = {(str(a), str(b)) for a, b in edges}
    return tuple(sorted(unique))


def node_sort_key(node: PlanNode) -> tuple[int, str]:
    type_name = getattr(node.type, "value", node.type)
    return (TYPE_ORDER.get(type_name, UNKNOWN_TYPE_ORDER), node.name)


# =============================================================================
# Value objects
# =============================================================================


@dataclass(frozen=True)
class IterationSpec:
    """A bounded fixpoint iteration group.

    Attributes:
        predicates: Member predicates, executed in this order every round
        repetitions: Maximum number of rounds
        stop_signal: Path of the convergence marker file ("" for none)
    """

    predicates: tuple[str, ...]
    repetitions: int
    stop_signal: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "predicates", tuple(str(p) for p in self.predicates))
        object.__setattr__(self, "stop_signal", str(self.stop_signal or ""))

    def to_dict(self) -> dict[str, Any]:
        return {
            "predicates": list(self.predicates),
            "repetitions": self.repetitions,
            "stop_signal": self.stop_signal,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | IterationSpec) -> IterationSpec:
        if isinstance(data, IterationSpec):
            return data
        return cls(
            predicates=tuple(data.get("predicates") or ()),
            repetitions=data.get("repetitions", 0),
            stop_signal=data.get("stop_signal") or "",
        )


@dataclass(frozen=True)
class PlanAction:
    """How a node is produced."""

    predicate: str
    launcher: Launcher
    engine: str | None = None
    sql: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "predicate": self.predicate,
            "launcher": Launcher(self.launcher).value,
            "engine": self.engine,
            "sql": self.sql,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PlanAction:
        return cls(
            predicate=data["predicate"],
            launcher=Launcher(data["launcher"]),
            engine=data.get("engine"),
            sql=data.get("sql"),
        )


@dataclass(frozen=True)
class PlanNode:
    """A predicate in the plan.

    Attributes:
        name: Unique node name
        type: data, intermediate or final
        requires: Sorted names of the direct predecessors
        action: How the node is produced
    """

    name: str
    type: NodeType
    requires: tuple[str, ...]
    action: PlanAction

    @property
    def launcher(self) -> Launcher:
        return self.action.launcher

    @property
    def is_data(self) -> bool:
        return self.action.launcher == Launcher.NONE

    @property
    def sql(self) -> str | None:
        return self.action.sql

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": NodeType(self.type).value,
            "requires": sorted(set(self.requires)),
            "action": self.action.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PlanNode:
        return cls(
            name=data["name"],
            type=NodeType(data["type"]),
            requires=tuple(data.get("requires") or ()),
            action=PlanAction.from_dict(data["action"]),
        )


@dataclass(frozen=True)
class PlanOutput:
    """Mapping from a requested final predicate to the node that holds it."""

    predicate: str
    node: str
    kind: str = "table"

    def to_dict(self) -> dict[str, Any]:
        return {"predicate": self.predicate, "node": self.node, "kind": self.kind}


# =============================================================================
# Plan
# =============================================================================


@dataclass(frozen=True)
class Plan:
    """A complete, serializable execution plan.

    Example:
        >>> plan = PlanBuilder.from_executions(executions, engine="sqlite")
        >>> text = plan.to_json()
        >>> Plan.from_json(text) == plan
        True
    """

    engine: str
    final_predicates: tuple[str, ...]
    outputs: tuple[PlanOutput, ...]
    preambles: tuple[str, ...] = ()
    dependency_edges: tuple[Edge, ...] = ()
    data_dependency_edges: tuple[Edge, ...] = ()
    iterations: Mapping[str, IterationSpec] = field(default_factory=dict)
    config: tuple[PlanNode, ...] = ()
    schema: str = PLAN_SCHEMA

    def __post_init__(self) -> None:
        object.__setattr__(self, "iterations", MappingProxyType(dict(self.iterations)))

    def __hash__(self) -> int:
        return hash((self.schema, self.engine, self.final_predicates, self.config))

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def node(self, name: str) -> PlanNode:
        for node in self.config:
            if node.name == name:
                return node
        raise KeyError(name)

    @property
    def nodes_by_name(self) -> dict[str, PlanNode]:
        return {node.name: node for node in self.config}

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire format (keys in canonical order)."""
        return {
            "schema": self.schema,
            "engine": self.engine,
            "final_predicates": list(self.final_predicates),
            "outputs": [output.to_dict() for output in self.outputs],
            "preambles": list(self.preambles),
            "dependency_edges": [list(edge) for edge in sort_edges(self.dependency_edges)],
            "data_dependency_edges": [list(edge) for edge in sort_edges(self.data_dependency_edges)],
            "iterations": {name: spec.to_dict() for name, spec in self.iterations.items()},
            "config": [node.to_dict() for node in sorted(self.config, key=node_sort_key)],
        }

    def to_json(self, pretty: bool = True) -> str:
        if pretty:
            return json.dumps(self.to_dict(), indent=2)
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], validate: bool = True) -> Plan:
        """Build a Plan from its wire format.

        Args:
            data: Parsed plan JSON
            validate: Run PlanValidator first

        Raises:
            PlanValidationError: If validation is enabled and the plan is invalid
        """
        if validate:
            from logica_plan.plan_validator import PlanValidator

            PlanValidator.validate(data)

        try:
            return cls(
                schema=data["schema"],
                engine=data["engine"],
                final_predicates=tuple(data["final_predicates"]),
                outputs=tuple(
                    PlanOutput(o["predicate"], o["node"], o.get("kind", "table"))
                    for o in data["outputs"]
                ),
                preambles=tuple(data.get("preambles") or ()),
                dependency_edges=sort_edges(data.get("dependency_edges") or ()),
                data_dependency_edges=sort_edges(data.get("data_dependency_edges") or ()),
                iterations={
                    str(name): IterationSpec.from_dict(spec)
                    for name, spec in (data.get("iterations") or {}).items()
                },
                config=tuple(PlanNode.from_dict(entry) for entry in data["config"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PlanValidationError(f"malformed plan: {e}") from e

    @classmethod
    def from_json(cls, text: str, validate: bool = True) -> Plan:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise PlanValidationError(f"plan is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise PlanValidationError("plan must be an object")
        return cls.from_dict(data, validate=validate)

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_json(), encoding="utf-8")

    @classmethod
    def load(cls, path: str | Path, validate: bool = True) -> Plan:
        """Load a plan from a JSON file.

        Raises:
            FileNotFoundError: If the file does not exist
            PlanValidationError: If the file is not a valid plan
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Plan file not found: {path}")
        return cls.from_json(path.read_text(encoding="utf-8"), validate=validate)
