"""Shared fixtures for logica_plan tests."""

import json
import logging

import pytest

from logica_plan.adapters import QueryResult, SQLiteAdapter
from logica_plan.execution import CompiledExecution
from logica_plan.plan_builder import PlanBuilder


INPUT_PREAMBLE = "CREATE TABLE Input (x INTEGER); INSERT INTO Input VALUES (1), (2), (3);"


@pytest.fixture
def total_execution_data():
    """Compiled execution for Total = sum of doubled Input values."""
    return {
        "main_predicate": "Total",
        "table_to_export_map": {
            "Doubled": "CREATE TABLE Doubled AS SELECT x * 2 AS y FROM Input;",
            "Total": "SELECT sum(y) AS s FROM Doubled;",
        },
        "dependency_edges": [["Doubled", "Total"]],
        "data_dependency_edges": [["Input", "Doubled"]],
        "iterations": {},
        "preamble": INPUT_PREAMBLE,
    }


@pytest.fixture
def total_execution(total_execution_data):
    return CompiledExecution.from_dict(total_execution_data)


@pytest.fixture
def total_plan(total_execution):
    return PlanBuilder.from_executions([total_execution], engine="sqlite")


@pytest.fixture
def executions_file(tmp_path, total_execution_data):
    path = tmp_path / "executions.json"
    path.write_text(json.dumps([total_execution_data]))
    return path


@pytest.fixture
def plan_file(tmp_path, total_plan):
    path = tmp_path / "plan.json"
    total_plan.save(path)
    return path


@pytest.fixture
def sqlite_adapter():
    adapter = SQLiteAdapter()
    yield adapter
    adapter.close()


class RecordingAdapter:
    """Adapter that records every statement instead of running it."""

    def __init__(self, on_exec=None):
        self.scripts = []
        self.queries = []
        self._on_exec = on_exec

    def exec_script(self, sql):
        self.scripts.append(sql)
        if self._on_exec is not None:
            self._on_exec(self, sql)

    def select_all(self, sql):
        self.queries.append(sql)
        return QueryResult(columns=("n",), rows=((1,),))


@pytest.fixture
def recording_adapter():
    return RecordingAdapter()


@pytest.fixture
def make_recording_adapter():
    """Factory for adapters with an exec_script hook."""
    return RecordingAdapter


@pytest.fixture
def reset_logging():
    """Remove handlers installed by configure_logging and restore the root level."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if getattr(handler, "_logica_plan", False):
            root.removeHandler(handler)
    root.setLevel(level)
