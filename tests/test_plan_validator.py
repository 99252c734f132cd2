"""Tests for PlanValidator."""

import copy

import pytest

from logica_plan.errors import PlanCycleError, PlanValidationError
from logica_plan.plan import PLAN_SCHEMA, Plan
from logica_plan.plan_validator import PlanValidator


def _node(name, requires=(), node_type="intermediate", sql=None):
    if node_type == "data":
        action = {"predicate": name, "launcher": "none", "engine": None, "sql": None}
    else:
        action = {
            "predicate": name,
            "launcher": "query",
            "engine": "sqlite",
            "sql": sql if sql is not None else f"SELECT 1 AS {name.lower()}",
        }
    return {"name": name, "type": node_type, "requires": list(requires), "action": action}


def _plan(nodes, iterations=None, finals=("Out",)):
    return {
        "schema": PLAN_SCHEMA,
        "engine": "sqlite",
        "final_predicates": list(finals),
        "outputs": [{"predicate": p, "node": p, "kind": "table"} for p in finals],
        "preambles": [],
        "dependency_edges": [],
        "data_dependency_edges": [],
        "iterations": iterations or {},
        "config": nodes,
    }


@pytest.fixture
def valid_plan():
    return _plan([
        _node("In", node_type="data"),
        _node("Mid", requires=["In"]),
        _node("Out", requires=["Mid"], node_type="final"),
    ])


def _error(data):
    with pytest.raises(PlanValidationError) as exc_info:
        PlanValidator.validate(data)
    return exc_info.value.message


class TestValidPlans:
    """Tests for plans that must validate."""

    def test_valid_plan(self, valid_plan):
        assert PlanValidator.validate(valid_plan) is True

    def test_plan_object(self, valid_plan):
        assert PlanValidator.validate(Plan.from_dict(valid_plan)) is True

    def test_cycle_inside_iteration_group_is_allowed(self):
        """Test that mutual recursion within a group is not a cycle."""
        plan = _plan(
            [
                _node("In", node_type="data"),
                _node("P", requires=["In", "Q"]),
                _node("Q", requires=["P"]),
                _node("Out", requires=["Q"], node_type="final"),
            ],
            iterations={"G": {"predicates": ["P", "Q"], "repetitions": 10, "stop_signal": ""}},
        )
        assert PlanValidator.validate(plan) is True

    def test_zero_repetitions(self):
        plan = _plan(
            [_node("P"), _node("Out", requires=["P"], node_type="final")],
            iterations={"G": {"predicates": ["P"], "repetitions": 0, "stop_signal": ""}},
        )
        assert PlanValidator.validate(plan) is True


class TestTopLevelFields:
    """Tests for top-level structure."""

    def test_not_an_object(self):
        assert _error([]) == "plan must be an object"

    def test_schema(self, valid_plan):
        valid_plan["schema"] = "other"
        assert _error(valid_plan) == f'schema must be "{PLAN_SCHEMA}"'

    def test_engine(self, valid_plan):
        valid_plan["engine"] = "mysql"
        assert _error(valid_plan) == 'engine must be one of ["sqlite", "psql"]'

    def test_final_predicates(self, valid_plan):
        valid_plan["final_predicates"] = ["Out", ""]
        assert _error(valid_plan) == "final_predicates must be an array of non-empty strings"

    def test_outputs_length(self, valid_plan):
        valid_plan["outputs"] = []
        assert _error(valid_plan) == "outputs length must match final_predicates length"

    def test_outputs_keys(self, valid_plan):
        valid_plan["outputs"][0]["extra"] = 1
        assert _error(valid_plan) == "outputs[0] must have keys: predicate, node, kind"

    def test_outputs_predicate_correspondence(self, valid_plan):
        valid_plan["outputs"][0]["predicate"] = "Mid"
        assert _error(valid_plan) == "outputs[0].predicate must equal final_predicates[0]"

    def test_outputs_kind(self, valid_plan):
        valid_plan["outputs"][0]["kind"] = "view"
        assert _error(valid_plan) == 'outputs[0].kind must be one of ["table"]'

    def test_outputs_missing_node(self, valid_plan):
        valid_plan["outputs"][0]["node"] = "Ghost"
        assert _error(valid_plan) == "outputs references missing node: Ghost"

    def test_preambles(self, valid_plan):
        valid_plan["preambles"] = ["ok", 3]
        assert _error(valid_plan) == "preambles must be an array of strings"

    def test_edges(self, valid_plan):
        valid_plan["dependency_edges"] = [["a", "b"], ["c"]]
        assert _error(valid_plan) == "dependency_edges[1] must be [String, String]"

    def test_iterations_object(self, valid_plan):
        valid_plan["iterations"] = []
        assert _error(valid_plan) == "iterations must be an object"


class TestConfigEntries:
    """Tests for config node checks."""

    def test_duplicate_name(self, valid_plan):
        valid_plan["config"].append(copy.deepcopy(valid_plan["config"][1]))
        assert _error(valid_plan) == "config.name must be unique: Mid"

    def test_unknown_type(self, valid_plan):
        valid_plan["config"][1]["type"] = "view"
        assert _error(valid_plan) == 'config[1].type must be one of ["data", "intermediate", "final"]'

    def test_requires_shape(self, valid_plan):
        valid_plan["config"][1]["requires"] = "In"
        assert _error(valid_plan) == "config[1].requires must be an array of non-empty strings"

    def test_action_predicate_must_match_name(self, valid_plan):
        valid_plan["config"][1]["action"]["predicate"] = "Other"
        assert _error(valid_plan) == "config[1].action.predicate must equal config[1].name"

    def test_unknown_launcher(self, valid_plan):
        valid_plan["config"][1]["action"]["launcher"] = "shell"
        assert _error(valid_plan) == 'config[1].action.launcher must be one of ["none", "query"]'

    def test_launcher_none_only_for_data(self, valid_plan):
        valid_plan["config"][0]["action"]["launcher"] = "query"
        assert _error(valid_plan) == "config[0]: launcher=none is required exactly for type=data"

    def test_data_nodes_have_no_requires(self, valid_plan):
        valid_plan["config"][0]["requires"] = ["Mid"]
        assert _error(valid_plan) == "config[0].requires must be empty for data nodes"

    def test_query_node_engine(self, valid_plan):
        valid_plan["config"][1]["action"]["engine"] = None
        assert _error(valid_plan) == 'config[1].action.engine must be one of ["sqlite", "psql"]'

    def test_query_node_sql(self, valid_plan):
        valid_plan["config"][1]["action"]["sql"] = None
        assert _error(valid_plan) == "config[1].action.sql must be a string"

    def test_missing_dependency(self, valid_plan):
        valid_plan["config"][2]["requires"] = ["Mid", "Ghost"]
        with pytest.raises(PlanValidationError) as exc_info:
            PlanValidator.validate(valid_plan)
        assert exc_info.value.message == "node Out requires missing dependency: Ghost"
        assert exc_info.value.details == {"node": "Out", "dependency": "Ghost"}


class TestIterations:
    """Tests for iteration spec checks."""

    def _with_group(self, valid_plan, spec):
        valid_plan["iterations"] = {"G": spec}
        return valid_plan

    def test_predicates_shape(self, valid_plan):
        self._with_group(valid_plan, {"predicates": "Mid", "repetitions": 1, "stop_signal": ""})
        assert _error(valid_plan) == "iterations.G.predicates must be an array of non-empty strings"

    @pytest.mark.parametrize("repetitions", [-1, 1.5, True, "3"])
    def test_repetitions(self, valid_plan, repetitions):
        self._with_group(valid_plan, {"predicates": ["Mid"], "repetitions": repetitions, "stop_signal": ""})
        assert _error(valid_plan) == "iterations.G.repetitions must be an integer >= 0"

    def test_stop_signal(self, valid_plan):
        self._with_group(valid_plan, {"predicates": ["Mid"], "repetitions": 1, "stop_signal": None})
        assert _error(valid_plan) == "iterations.G.stop_signal must be a string"

    def test_missing_member(self, valid_plan):
        self._with_group(valid_plan, {"predicates": ["Ghost"], "repetitions": 1, "stop_signal": ""})
        assert _error(valid_plan) == "iterations.G references missing node: Ghost"

    def test_member_must_be_query(self, valid_plan):
        self._with_group(valid_plan, {"predicates": ["In"], "repetitions": 1, "stop_signal": ""})
        assert _error(valid_plan) == "iterations.G node must have launcher=query: In"

    def test_member_in_two_groups(self, valid_plan):
        spec = {"predicates": ["Mid"], "repetitions": 1, "stop_signal": ""}
        valid_plan["iterations"] = {"G": spec, "H": dict(spec)}
        assert _error(valid_plan) == "node appears in multiple iterations: Mid"


class TestCycles:
    """Tests for acyclicity of the collapsed unit graph."""

    def test_two_node_cycle(self):
        plan = _plan([
            _node("A", requires=["B"]),
            _node("B", requires=["A"]),
            _node("Out", node_type="final"),
        ])
        with pytest.raises(PlanCycleError) as exc_info:
            PlanValidator.validate(plan)
        assert exc_info.value.units == ["A", "B"]
        assert exc_info.value.message == "plan has a cycle or deadlock among: A, B"

    def test_cycle_through_iteration_group(self):
        """Test a cycle between a group and a node outside it."""
        plan = _plan(
            [
                _node("P", requires=["X"]),
                _node("X", requires=["P"]),
                _node("Out", requires=["X"], node_type="final"),
            ],
            iterations={"G": {"predicates": ["P"], "repetitions": 2, "stop_signal": ""}},
        )
        with pytest.raises(PlanCycleError) as exc_info:
            PlanValidator.validate(plan)
        assert sorted(exc_info.value.units) == ["Out", "X", "iter:G"]

    def test_from_dict_validates_by_default(self):
        plan = _plan([_node("A", requires=["A"]), _node("Out", node_type="final")])
        with pytest.raises(PlanCycleError):
            Plan.from_dict(plan)
        assert Plan.from_dict(plan, validate=False).node("A").requires == ("A",)
