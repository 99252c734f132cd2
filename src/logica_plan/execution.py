"""The compiled-execution interface consumed by PlanBuilder.

An Execution is the compiler's output for one main predicate: the SQL it
exports per predicate, the edges between predicates and any iteration groups.
Any object satisfying the Execution protocol can be fed to PlanBuilder;
CompiledExecution is the concrete, JSON-loadable implementation.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Protocol, runtime_checkable

from logica_plan.errors import PlanValidationError
from logica_plan.plan import Edge, IterationSpec


@runtime_checkable
class Execution(Protocol):
    """Protocol for one compiled rule set."""

    @property
    def main_predicate(self) -> str:
        """Predicate this execution was compiled for."""
        ...

    @property
    def table_to_export_map(self) -> Mapping[str, str]:
        """Predicate name -> SQL that materializes it."""
        ...

    @property
    def dependency_edges(self) -> Any:
        """(source, target) pairs; target depends on source."""
        ...

    @property
    def data_dependency_edges(self) -> Any:
        """(source, target) pairs where source is an input table."""
        ...

    @property
    def iterations(self) -> Mapping[str, Any]:
        """Iteration group name -> IterationSpec (or its dict form)."""
        ...

    @property
    def preamble(self) -> str:
        """SQL run once before any node of the plan."""
        ...

    def predicate_specific_preamble(self, predicate: str) -> str:
        """SQL prepended to every statement exported for a predicate."""
        ...


def _edge_set(edges: Any) -> frozenset[Edge]:
    result = set()
    for edge in edges or ():
        source, target = edge
        result.add((str(source), str(target)))
    return frozenset(result)


@dataclass(frozen=True)
class CompiledExecution:
    """Concrete Execution loaded from a compiler's JSON output.

    Example:
        >>> execution = CompiledExecution(
        ...     main_predicate="Total",
        ...     table_to_export_map={"Total": "CREATE TABLE Total AS SELECT 1 AS x;"},
        ... )
    """

    main_predicate: str
    table_to_export_map: Mapping[str, str] = field(default_factory=dict)
    dependency_edges: frozenset[Edge] = frozenset()
    data_dependency_edges: frozenset[Edge] = frozenset()
    iterations: Mapping[str, IterationSpec] = field(default_factory=dict)
    preamble: str = ""
    predicate_preambles: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "table_to_export_map", dict(self.table_to_export_map))
        object.__setattr__(self, "dependency_edges", _edge_set(self.dependency_edges))
        object.__setattr__(self, "data_dependency_edges", _edge_set(self.data_dependency_edges))
        object.__setattr__(
            self,
            "iterations",
            {str(name): IterationSpec.from_dict(spec) for name, spec in (self.iterations or {}).items()},
        )
        object.__setattr__(self, "preamble", self.preamble or "")

    def predicate_specific_preamble(self, predicate: str) -> str:
        return self.predicate_preambles.get(predicate, "")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CompiledExecution:
        """Create from a dictionary.

        Raises:
            PlanValidationError: If main_predicate is missing
        """
        if not data.get("main_predicate"):
            raise PlanValidationError("execution must have a main_predicate")

        return cls(
            main_predicate=str(data["main_predicate"]),
            table_to_export_map=data.get("table_to_export_map") or {},
            dependency_edges=data.get("dependency_edges") or (),
            data_dependency_edges=data.get("data_dependency_edges") or (),
            iterations=data.get("iterations") or {},
            preamble=data.get("preamble") or "",
            predicate_preambles=data.get("predicate_preambles") or {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "main_predicate": self.main_predicate,
            "table_to_export_map": dict(self.table_to_export_map),
            "dependency_edges": [list(e) for e in sorted(self.dependency_edges)],
            "data_dependency_edges": [list(e) for e in sorted(self.data_dependency_edges)],
            "iterations": {name: spec.to_dict() for name, spec in self.iterations.items()},
            "preamble": self.preamble,
            "predicate_preambles": dict(self.predicate_preambles),
        }


def load_executions(path: str | Path) -> list[CompiledExecution]:
    """Load executions from a JSON file holding one object or a list of objects.

    Raises:
        FileNotFoundError: If the file does not exist
        PlanValidationError: If the file is not valid execution JSON
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Executions file not found: {path}")

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise PlanValidationError(f"executions file is not valid JSON: {path}: {e}") from e

    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise PlanValidationError(f"executions file must hold an object or a list of objects: {path}")
    return [CompiledExecution.from_dict(item) for item in data]
