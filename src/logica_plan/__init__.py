"""logica-plan - Execution plans and SQL safety for compiled Logica predicates."""

from logica_plan.access_policy import AccessPolicy, FunctionProfile, TrustLevel
from logica_plan.adapters import (
    DatabaseAdapter,
    PostgreSQLAdapter,
    QueryResult,
    SQLiteAdapter,
    create_adapter,
)
from logica_plan.config import Settings, configure_logging, load_policy
from logica_plan.errors import (
    ConfigError,
    LogicaPlanError,
    PlanCycleError,
    PlanExecutionError,
    PlanValidationError,
    Violation,
    ViolationReason,
)
from logica_plan.execution import CompiledExecution, Execution, load_executions
from logica_plan.executor import ReferencePlanExecutor, fetch_outputs
from logica_plan.guard import GuardReport, SqlGuard
from logica_plan.plan import (
    PLAN_SCHEMA,
    IterationSpec,
    Launcher,
    NodeType,
    Plan,
    PlanAction,
    PlanNode,
    PlanOutput,
)
from logica_plan.plan_builder import PlanBuilder
from logica_plan.plan_validator import PlanValidator
from logica_plan.sql_safety import (
    FunctionAllowlistValidator,
    QueryOnlyValidator,
    RelationAccessValidator,
)

# Version: Single source of truth from pyproject.toml
try:
    from importlib.metadata import version, PackageNotFoundError

    __version__ = version("logica-plan")
except PackageNotFoundError:
    # Package not installed (development mode)
    __version__ = "0.0.0.dev"

__all__ = [
    # Plans
    "PLAN_SCHEMA",
    "Plan",
    "PlanNode",
    "PlanAction",
    "PlanOutput",
    "IterationSpec",
    "NodeType",
    "Launcher",
    "PlanBuilder",
    "PlanValidator",
    # Executions
    "Execution",
    "CompiledExecution",
    "load_executions",
    # Execution
    "ReferencePlanExecutor",
    "fetch_outputs",
    "DatabaseAdapter",
    "SQLiteAdapter",
    "PostgreSQLAdapter",
    "QueryResult",
    "create_adapter",
    # SQL safety
    "AccessPolicy",
    "TrustLevel",
    "FunctionProfile",
    "SqlGuard",
    "GuardReport",
    "QueryOnlyValidator",
    "FunctionAllowlistValidator",
    "RelationAccessValidator",
    # Configuration
    "Settings",
    "load_policy",
    "configure_logging",
    # Errors
    "LogicaPlanError",
    "PlanValidationError",
    "PlanCycleError",
    "PlanExecutionError",
    "ConfigError",
    "Violation",
    "ViolationReason",
    "__version__",
]
