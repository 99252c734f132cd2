"""Exceptions raised by plan compilation, validation, execution and SQL safety.

This module defines a small hierarchy:
- PlanValidationError: structural or acyclicity defects in a plan
- PlanExecutionError: scheduling failures while running a plan
- Violation: a SQL statement rejected by a safety validator
- ConfigError: unreadable or invalid settings and policy files

All exceptions carry contextual details and can be serialized with to_dict().
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class LogicaPlanError(Exception):
    """Base exception for all logica_plan errors.

    Attributes:
        message: Error message
        details: Additional error details
    """

    def __init__(self, message: str, details: Any = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# Plan Exceptions
# =============================================================================


class PlanValidationError(LogicaPlanError):
    """Raised when a plan is malformed or cannot be ordered."""

    pass


class PlanCycleError(PlanValidationError):
    """Raised when the collapsed unit graph of a plan contains a cycle.

    Attributes:
        units: Sorted names of every unit that could not be ordered
    """

    def __init__(self, units: list[str]):
        self.units = sorted(units)
        super().__init__(
            f"plan has a cycle or deadlock among: {', '.join(self.units)}",
            details={"units": self.units},
        )


class PlanExecutionError(LogicaPlanError):
    """Raised when a plan cannot be scheduled to completion."""

    pass


class ConfigError(LogicaPlanError):
    """Raised when a settings or policy file cannot be loaded."""

    pass


# =============================================================================
# SQL Safety Exceptions
# =============================================================================


class ViolationReason(str, Enum):
    """Why a SQL statement was rejected."""

    FORBIDDEN_FUNCTION = "forbidden_function"
    FUNCTION_NOT_ALLOWED = "function_not_allowed"
    RELATION_NOT_ALLOWED = "relation_not_allowed"
    SCHEMA_NOT_ALLOWED = "schema_not_allowed"
    DENIED_SCHEMA = "denied_schema"
    INVALID_RELATION = "invalid_relation"
    EMPTY_SQL = "empty_sql"
    NOT_A_QUERY = "not_a_query"
    MULTIPLE_STATEMENTS = "multiple_statements"
    FORBIDDEN_KEYWORD = "forbidden_keyword"
    SELECT_INTO = "select_into"


class Violation(LogicaPlanError):
    """Raised when SQL breaks an access policy or the query-only contract.

    Attributes:
        reason: Machine-readable rejection reason
        message: Human-readable explanation
        details: Reason-specific payload (function name, allowlist, ...)
    """

    def __init__(
        self,
        reason: ViolationReason | str,
        message: str,
        details: Any = None,
    ):
        self.reason = ViolationReason(reason)
        super().__init__(message, details)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["reason"] = self.reason.value
        return result
