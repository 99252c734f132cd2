"""Tests for FunctionAllowlistValidator."""

import logging

import pytest

from logica_plan.access_policy import (
    RAILS_MINIMAL_ALLOWED_FUNCTIONS,
    RAILS_MINIMAL_PLUS_ALLOWED_FUNCTIONS,
    FunctionProfile,
)
from logica_plan.errors import Violation, ViolationReason
from logica_plan.sql_safety.function_allowlist import (
    FunctionAllowlistValidator,
    FunctionCall,
    infer_profile,
    normalize_allowlist,
    scan_function_calls,
)


class TestScanFunctionCalls:
    """Tests for function call recognition."""

    def test_calls_in_first_seen_order(self):
        """Test that calls are deduplicated by qualified name."""
        calls = scan_function_calls("SELECT max(a), count(b), max(c), s.max(d) FROM t")
        assert calls == [
            FunctionCall("max", "max"),
            FunctionCall("count", "count"),
            FunctionCall("s.max", "max"),
        ]

    def test_paren_keywords_are_not_calls(self):
        """Test IN (...), OVER (...), FROM (...) and friends."""
        sql = (
            "SELECT sum(x) OVER (PARTITION BY y) FROM (SELECT * FROM t) AS s "
            "WHERE y IN (1, 2) AND EXISTS (SELECT 1)"
        )
        assert [c.unqualified for c in scan_function_calls(sql)] == ["sum"]

    def test_quoted_function_names(self):
        """Test that quoted names are normalized."""
        calls = scan_function_calls('SELECT "Public"."MyFn"(x)')
        assert calls == [FunctionCall("public.myfn", "myfn")]


class TestNormalizeAllowlist:
    """Tests for allowlist normalization."""

    def test_entries_are_normalized(self):
        """Test trimming, case folding, quoting and invalid entries."""
        assert normalize_allowlist([" Count ", '"Upper"', "Public.MyFn", "bad name!", ""]) == frozenset(
            {"count", "upper", "public.myfn"}
        )

    def test_single_string(self):
        assert normalize_allowlist("sum") == frozenset({"sum"})

    def test_infer_profile(self):
        """Test that canonical allowlists are recognized."""
        assert infer_profile(RAILS_MINIMAL_ALLOWED_FUNCTIONS) == FunctionProfile.RAILS_MINIMAL
        assert infer_profile(RAILS_MINIMAL_PLUS_ALLOWED_FUNCTIONS) == FunctionProfile.RAILS_MINIMAL_PLUS
        assert infer_profile(frozenset({"upper"})) == FunctionProfile.CUSTOM


class TestFunctionAllowlistValidator:
    """Tests for FunctionAllowlistValidator.validate()."""

    def test_allowed_functions_pass(self):
        """Test that allowed calls return the functions used."""
        used = FunctionAllowlistValidator.validate(
            "SELECT count(*), sum(x) FROM t",
            engine="sqlite",
            allowed_functions=RAILS_MINIMAL_ALLOWED_FUNCTIONS,
        )
        assert used == {"count", "sum"}

    def test_disallowed_function(self):
        """Test the violation details for a function outside the allowlist."""
        with pytest.raises(Violation) as exc_info:
            FunctionAllowlistValidator.validate(
                "SELECT upper(name) FROM users",
                engine="sqlite",
                allowed_functions=RAILS_MINIMAL_PLUS_ALLOWED_FUNCTIONS,
            )
        error = exc_info.value
        assert error.reason == ViolationReason.FUNCTION_NOT_ALLOWED
        assert error.details["function"] == "upper"
        assert error.details["allowed"] == sorted(RAILS_MINIMAL_PLUS_ALLOWED_FUNCTIONS)
        assert error.details["profile"] == "rails_minimal_plus"

    def test_qualified_allowlist_entries(self):
        """Test qualified and unqualified matches."""
        sql = "SELECT public.myfn(x) FROM t"
        FunctionAllowlistValidator.validate(sql, engine="psql", allowed_functions=["public.myfn"])
        FunctionAllowlistValidator.validate(sql, engine="psql", allowed_functions=["myfn"])
        with pytest.raises(Violation):
            FunctionAllowlistValidator.validate(sql, engine="psql", allowed_functions=["other.myfn"])

    def test_string_literals_are_ignored(self):
        """Test that call-shaped text inside literals is not a call."""
        used = FunctionAllowlistValidator.validate(
            "SELECT 'upper(x)' AS s -- lower(y)\nFROM t",
            engine="sqlite",
            allowed_functions=[],
        )
        assert used == set()

    def test_unrestricted_allowlist(self):
        """Test that None disables the allowlist."""
        used = FunctionAllowlistValidator.validate(
            "SELECT upper(a), lower(b) FROM t", engine="sqlite", allowed_functions=None
        )
        assert used == {"upper", "lower"}

    def test_forbidden_checked_before_allowlist(self, caplog):
        """Test that forbidden functions win even when allowlisted."""
        with caplog.at_level(logging.WARNING, logger="logica_plan.sql_safety.function_allowlist"):
            with pytest.raises(Violation) as exc_info:
                FunctionAllowlistValidator.validate(
                    "SELECT pg_sleep(1)",
                    engine="psql",
                    allowed_functions=["pg_sleep"],
                    forbidden_functions=["pg_sleep"],
                )
        assert exc_info.value.reason == ViolationReason.FORBIDDEN_FUNCTION
        assert exc_info.value.details == "pg_sleep"
        assert "pg_sleep" in caplog.text

    def test_scan_functions(self):
        """Test the non-enforcing scan."""
        assert FunctionAllowlistValidator.scan_functions("SELECT max(a), x.max(b), count(c)") == [
            "max",
            "count",
        ]

    def test_escape_string_does_not_hide_calls(self):
        """Test that a backslash-escaped quote does not swallow later calls."""
        with pytest.raises(Violation) as exc_info:
            FunctionAllowlistValidator.validate(
                "SELECT E'\\'' AS a, pg_sleep(10) FROM t",
                engine="psql",
                allowed_functions={"count"},
                forbidden_functions={"pg_sleep"},
            )
        assert exc_info.value.reason == ViolationReason.FORBIDDEN_FUNCTION

    def test_dollar_in_identifier_does_not_hide_calls(self):
        with pytest.raises(Violation) as exc_info:
            FunctionAllowlistValidator.validate(
                "SELECT 1 AS a$b$, upper(name) FROM t", engine="psql", allowed_functions={"count"}
            )
        assert exc_info.value.reason == ViolationReason.FUNCTION_NOT_ALLOWED
